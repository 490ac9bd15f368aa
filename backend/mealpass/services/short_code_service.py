# Overview: Human-typeable short codes that stand in for a meal token at the kiosk.

import re
import secrets


# No 0/1/O/I: avoids misreads when typed from a phone screen
SHORT_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
SHORT_CODE_LENGTH = 10
SHORT_CODE_MIN_LENGTH = 8
SHORT_CODE_MAX_LENGTH = 12

_VALID_RE = re.compile(
    rf"^[{SHORT_CODE_ALPHABET}]{{{SHORT_CODE_MIN_LENGTH},{SHORT_CODE_MAX_LENGTH}}}$"
)


def generate_short_code(length: int = SHORT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def normalize_short_code(value: str) -> str:
    """Uppercase and strip separators (dashes, spaces) as typed by a person."""
    return re.sub(r"[\s-]", "", value or "").upper()


def looks_like_short_code(value: str) -> bool:
    """
    True for inputs that should be treated as short codes, not credentials.

    Signed credentials always contain dots; short codes never do.
    """
    if not value or "." in value:
        return False
    return len(normalize_short_code(value)) <= SHORT_CODE_MAX_LENGTH + 4


def is_valid_short_code(value: str) -> bool:
    return bool(_VALID_RE.match(normalize_short_code(value)))


def format_short_code(code: str) -> str:
    """ABCDEFGHJK -> ABCDE-FGHJK for display."""
    code = normalize_short_code(code)
    if len(code) <= 5:
        return code
    mid = len(code) // 2
    return f"{code[:mid]}-{code[mid:]}"
