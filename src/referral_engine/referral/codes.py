"""Referral code generation and validation."""

import re
import secrets
import time

# Excludes visually ambiguous characters: 0, O, 1, I
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
PREFIX_LENGTH = 2

_CODE_RE = re.compile(r"^[A-HJ-NP-Z2-9]{6}$")
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _to_base(value: int, digits: str) -> str:
    if value == 0:
        return digits[0]
    out = []
    base = len(digits)
    while value:
        value, rem = divmod(value, base)
        out.append(digits[rem])
    return "".join(reversed(out))


def _random_chars(count: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(count))


def user_prefix(user_id: str) -> str:
    """Two-character prefix derived from the user ID.

    Sums the character codes of ``user_id``, renders the sum in base 36 and
    maps the code point of each of the first two digits onto the alphabet.
    """
    checksum = sum(ord(ch) for ch in user_id)
    digits = _to_base(checksum, _BASE36).rjust(PREFIX_LENGTH, "0")
    return "".join(ALPHABET[ord(d) % len(ALPHABET)] for d in digits[:PREFIX_LENGTH])


def generate_code(user_id: str, attempt: int = 0) -> str:
    """Generate a 6-character referral code.

    Args:
        user_id: User the code is issued to
        attempt: Retry number; 0 keeps the user-derived prefix, later
            attempts are fully random to escape a collision

    Returns:
        Upper-case code drawn from ``ALPHABET``
    """
    if attempt == 0:
        return user_prefix(user_id) + _random_chars(CODE_LENGTH - PREFIX_LENGTH)
    return _random_chars(CODE_LENGTH)


def timestamp_code(now_ms: int | None = None) -> str:
    """Last-resort code derived from the current time in milliseconds."""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    encoded = _to_base(now_ms, ALPHABET)
    return encoded[-CODE_LENGTH:].rjust(CODE_LENGTH, ALPHABET[0])


def normalize_code(code: str | None) -> str | None:
    """Canonical form used for lookups (trimmed, upper-case)."""
    if not code or not isinstance(code, str):
        return None
    return code.strip().upper()


def is_valid_code(code: object) -> bool:
    """Check the referral code format: exactly 6 symbols from ``ALPHABET``."""
    if not code or not isinstance(code, str):
        return False
    return _CODE_RE.fullmatch(code) is not None
