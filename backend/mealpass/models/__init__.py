from .customers import Customer, Subscription, Skip, ServiceClosure
from .entitlements import Entitlement, MealToken, Redemption
from .sessions import DeviceSession, OperatorSession, OperatorMagicLink
from .security import AuditEvent, RateLimit
from .delivery import NotificationRetry, WebhookEvent, SkipSelection

__all__ = [
    'Customer', 'Subscription', 'Skip', 'ServiceClosure',
    'Entitlement', 'MealToken', 'Redemption',
    'DeviceSession', 'OperatorSession', 'OperatorMagicLink',
    'AuditEvent', 'RateLimit',
    'NotificationRetry', 'WebhookEvent', 'SkipSelection',
]
