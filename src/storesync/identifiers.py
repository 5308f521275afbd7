"""Human-readable order identifiers.

Confirmation and order numbers are display identifiers. They are meant to be
unique in practice, not unguessable, and must never be used to authorize
anything.
"""

import secrets
import time
from urllib.parse import quote

from .config import DEFAULT_STORE_PREFIX

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"

CONFIRMATION_RANDOM_LENGTH = 4
CONFIRMATION_TIME_LENGTH = 4
CONFIRMATION_USER_LENGTH = 2
CONFIRMATION_LENGTH = (
    CONFIRMATION_RANDOM_LENGTH + CONFIRMATION_TIME_LENGTH + CONFIRMATION_USER_LENGTH
)


def to_base36(value: int) -> str:
    """Render a non-negative integer in lowercase base 36."""
    if value < 0:
        raise ValueError("base36 only supports non-negative integers")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def user_hash(user_id: str) -> str:
    """Cheap 2-character tag derived from the sum of the user id's code points."""
    total = sum(ord(ch) for ch in user_id)
    return to_base36(total)[:CONFIRMATION_USER_LENGTH].upper().rjust(CONFIRMATION_USER_LENGTH, "0")


def generate_confirmation_number(user_id: str, now_ms: int | None = None) -> str:
    """
    Build a 10-character confirmation code.

    Layout: 4 chars from random bytes in base 36, the last 4 digits of the
    creation time in milliseconds, then a 2-char tag of the user id.
    """
    random_part = ""
    # Single bytes can render as one base-36 char; draw until there are enough
    while len(random_part) < CONFIRMATION_RANDOM_LENGTH:
        random_part += "".join(to_base36(b) for b in secrets.token_bytes(CONFIRMATION_RANDOM_LENGTH))
    random_part = random_part[:CONFIRMATION_RANDOM_LENGTH].upper()

    timestamp = str(now_ms if now_ms is not None else _now_ms())
    time_part = timestamp[-CONFIRMATION_TIME_LENGTH:].rjust(CONFIRMATION_TIME_LENGTH, "0")

    return f"{random_part}{time_part}{user_hash(user_id)}"


def generate_order_number(
    created_ms: int, correlation_id: str | None, prefix: str = DEFAULT_STORE_PREFIX
) -> str:
    """
    Build a short display order number: prefix + 6 time digits + 4 id chars.

    The last 4 characters of the checkout correlation id keep numbers created
    in the same millisecond window apart.
    """
    time_part = str(created_ms)[-6:].rjust(6, "0")
    session_part = (correlation_id or "")[-4:] or "0000"
    return f"{prefix}{time_part}{session_part}"


def generate_local_order_id(now_ms: int | None = None) -> str:
    """Id for a locally constructed order: ``order_<ms>_<9 random chars>``."""
    stamp = now_ms if now_ms is not None else _now_ms()
    suffix = to_base36(secrets.randbits(48)).rjust(9, "0")[:9]
    return f"order_{stamp}_{suffix}"


def safe_document_id(value: str) -> str:
    """
    Document id derived from an external id (correlation id, product id).

    Percent-encoded, so distinct external ids map to distinct documents. Ids
    made of letters, digits, "_", "-", "." and "~" are returned unchanged.
    """
    return quote(value, safe="")
