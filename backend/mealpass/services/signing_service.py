# Overview: Credential signing and verification (meal tokens, kiosk sessions, operator sessions).

"""
Signing Service

WHY: Every credential the system hands out is a signed JWT. Meal tokens and
kiosk sessions use ES256 so terminals can verify with a public key only;
operator sessions are HS256 under the app SECRET_KEY since only this server
ever verifies them.

EXPIRY: PyJWT's own exp check is disabled. Expiry is evaluated here against
the caller's `now` with `now >= exp` meaning expired, so a token presented
at exactly the end-of-day instant is rejected and tests can pin the clock.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from datetime import datetime

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from flask import current_app

from mealpass.time_utils import to_epoch_seconds, to_utc_naive, utcnow


ES256 = "ES256"
HS256 = "HS256"

_EXTENSION_KEY = "mealpass_signers"


class SigningKeyError(Exception):
    """Raised when a signing/verification key is missing or unreadable."""
    pass


class CredentialInvalid(Exception):
    """Raised when a credential fails signature, issuer or claim checks."""
    pass


class CredentialExpired(Exception):
    """Raised when a credential is presented at or after its exp instant."""
    pass


def new_jti() -> str:
    return secrets.token_hex(16)


def _pem_text(value: str) -> bytes:
    """Accept PEM text or base64-encoded PEM (single-line env vars)."""
    text = value.strip()
    if "-----BEGIN" in text:
        return text.replace("\\n", "\n").encode("utf-8")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SigningKeyError("Key is neither PEM nor base64-encoded PEM") from exc


def load_private_key(value: str):
    try:
        return serialization.load_pem_private_key(_pem_text(value), password=None)
    except ValueError as exc:
        raise SigningKeyError("Unreadable private key") from exc


def load_public_key(value: str):
    try:
        return serialization.load_pem_public_key(_pem_text(value))
    except ValueError as exc:
        raise SigningKeyError("Unreadable public key") from exc


def generate_es256_keypair() -> tuple[str, str]:
    """Return (private_pem, public_pem) for a fresh P-256 key."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


class TokenSigner:
    """Signs and verifies JWTs for one issuer with one algorithm."""

    def __init__(self, *, issuer: str, algorithm: str = ES256,
                 private_key: str | None = None, public_key: str | None = None,
                 secret: str | None = None):
        self.issuer = issuer
        self.algorithm = algorithm

        if algorithm == HS256:
            if not secret:
                raise SigningKeyError(f"No secret configured for issuer {issuer}")
            self._signing_key = secret
            self._verifying_key = secret
            return

        self._signing_key = load_private_key(private_key) if private_key else None
        if public_key:
            self._verifying_key = load_public_key(public_key)
        elif self._signing_key is not None:
            self._verifying_key = self._signing_key.public_key()
        else:
            raise SigningKeyError(f"No key configured for issuer {issuer}")

    @property
    def can_sign(self) -> bool:
        return self._signing_key is not None

    def sign(self, claims: dict, *, expires_at: datetime, issued_at: datetime | None = None,
             jti: str | None = None) -> str:
        """Sign `claims` adding iss, iat, exp and a jti (fresh unless one is passed)."""
        if self._signing_key is None:
            raise SigningKeyError(f"Issuer {self.issuer} has no private key")
        payload = dict(claims)
        payload["iss"] = self.issuer
        payload["iat"] = to_epoch_seconds(issued_at or utcnow())
        payload["exp"] = to_epoch_seconds(expires_at)
        payload["jti"] = jti or new_jti()
        return jwt.encode(payload, self._signing_key, algorithm=self.algorithm)

    def verify(self, token: str, *, now: datetime | None = None,
               required: tuple[str, ...] = ()) -> dict:
        """
        Verify signature, issuer and expiry; return the claims.

        Raises CredentialInvalid or CredentialExpired. Messages never echo
        claim values.
        """
        if not token or not isinstance(token, str):
            raise CredentialInvalid("Missing credential")
        try:
            claims = jwt.decode(
                token,
                self._verifying_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["exp", "iss", *required],
                },
            )
        except jwt.InvalidTokenError as exc:
            raise CredentialInvalid("Credential failed verification") from exc

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise CredentialInvalid("Credential has no usable expiry")

        now = to_utc_naive(now) if now is not None else utcnow()
        if _timestamp(now) >= exp:
            raise CredentialExpired("Credential expired")
        return claims


def _timestamp(now: datetime) -> float:
    return (now - datetime(1970, 1, 1)).total_seconds()


def _cached(name: str, factory) -> TokenSigner:
    cache = current_app.extensions.setdefault(_EXTENSION_KEY, {})
    signer = cache.get(name)
    if signer is None:
        signer = factory()
        cache[name] = signer
    return signer


def get_meal_signer() -> TokenSigner:
    cfg = current_app.config
    return _cached("meal", lambda: TokenSigner(
        issuer=cfg["MEAL_TOKEN_ISSUER"],
        private_key=cfg.get("MEAL_TOKEN_PRIVATE_KEY"),
        public_key=cfg.get("MEAL_TOKEN_PUBLIC_KEY"),
    ))


def get_kiosk_signer() -> TokenSigner:
    cfg = current_app.config
    return _cached("kiosk", lambda: TokenSigner(
        issuer=cfg["KIOSK_ISSUER"],
        private_key=cfg.get("KIOSK_PRIVATE_KEY"),
        public_key=cfg.get("KIOSK_PUBLIC_KEY"),
    ))


def get_operator_signer() -> TokenSigner:
    cfg = current_app.config
    return _cached("operator", lambda: TokenSigner(
        issuer=cfg["OPERATOR_ISSUER"],
        algorithm=HS256,
        secret=cfg.get("SECRET_KEY"),
    ))
