"""TOTP secrets/codes (RFC 6238) and single-use backup codes.

6-digit codes, 30-second step, one step of clock drift tolerated either way.
Nothing here raises on bad input: malformed secrets or codes simply fail verification.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple, Union

import pyotp

CODE_DIGITS = 6
STEP_SECONDS = 30
DRIFT_STEPS = 1
DEFAULT_BACKUP_CODE_COUNT = 10

_CODE_PATTERN = re.compile(r"^\d{6}$")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")

Timestamp = Union[datetime, int, float]


def generate_secret() -> str:
    """32 base32 characters from a CSPRNG, accepted by every authenticator app."""
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    return pyotp.TOTP(secret, digits=CODE_DIGITS, interval=STEP_SECONDS).provisioning_uri(
        name=account_label,
        issuer_name=issuer,
    )


def _as_timestamp(value: Optional[Timestamp]) -> int:
    if value is None:
        return int(datetime.now(timezone.utc).timestamp())
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    return int(value)


def code_at(secret: str, for_time: Optional[Timestamp] = None) -> str:
    return pyotp.TOTP(secret, digits=CODE_DIGITS, interval=STEP_SECONDS).at(_as_timestamp(for_time))


def verify_code(secret: Optional[str], submitted: Optional[str], now: Optional[Timestamp] = None) -> bool:
    """Check ``submitted`` against the previous, current and next time steps."""
    candidate = (submitted or "").strip().replace(" ", "")
    if not secret or not _CODE_PATTERN.match(candidate):
        return False
    try:
        totp = pyotp.TOTP(secret, digits=CODE_DIGITS, interval=STEP_SECONDS)
        timestamp = _as_timestamp(now)
        expected = [totp.at(timestamp, counter_offset=offset) for offset in range(-DRIFT_STEPS, DRIFT_STEPS + 1)]
    except (binascii.Error, ValueError, TypeError):
        return False
    matched = False
    for code in expected:
        # no early exit
        matched |= hmac.compare_digest(code, candidate)
    return matched


def generate_backup_codes(count: int = DEFAULT_BACKUP_CODE_COUNT) -> List[str]:
    codes = []
    for _ in range(max(count, 0)):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(value: Optional[str]) -> str:
    cleaned = _NON_ALNUM.sub("", value or "").upper()
    if len(cleaned) == 8:
        return f"{cleaned[:4]}-{cleaned[4:]}"
    return cleaned


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


def consume_backup_code(codes: Sequence[str], submitted: Optional[str]) -> Tuple[bool, List[str]]:
    """Remove exactly one matching code. No match returns the set untouched."""
    remaining = list(codes)
    candidate = normalize_backup_code(submitted)
    if len(candidate) != 9:
        return False, remaining
    for index, code in enumerate(remaining):
        if hmac.compare_digest(normalize_backup_code(code), candidate):
            del remaining[index]
            return True, remaining
    return False, remaining


__all__ = [
    "CODE_DIGITS",
    "DEFAULT_BACKUP_CODE_COUNT",
    "STEP_SECONDS",
    "code_at",
    "consume_backup_code",
    "generate_backup_codes",
    "generate_secret",
    "hash_backup_code",
    "normalize_backup_code",
    "provisioning_uri",
    "verify_code",
]
