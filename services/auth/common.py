"""Shared error type, request context, audit trail and transaction helpers for the identity core."""

from __future__ import annotations

import hashlib
import ipaddress
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from core.auth.constants import ERROR_STATUS, AuthErrorKind, IdentifierType
from core.auth.settings import get_auth_settings
from core.logging import get_logger
from models.auth_audit import AuthEvent
from services.auth_rate_limiter import RateLimitResult, check_limit as _check_limit
from services.auth_tokens import AuthTokenError
from services.field_crypto import FieldCryptoError

logger = get_logger(__name__)

_E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_STRIP = re.compile(r"[\s().\-]")

_DEFAULT_CODES: Dict[AuthErrorKind, str] = {
    "InvalidInput": "auth.invalid_input",
    "NotFound": "auth.not_found",
    "Conflict": "auth.conflict",
    "RateLimited": "auth.rate_limited",
    "Expired": "auth.expired",
    "AttemptsExhausted": "auth.attempts_exhausted",
    "ProviderError": "auth.provider_error",
    "Unauthenticated": "auth.required",
    "Forbidden": "auth.forbidden",
    "Unavailable": "auth.unavailable",
}


class AuthServiceError(Exception):
    """Typed failure surfaced to the HTTP layer as ``{"code", "message", ...}``."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        *,
        kind: Optional[AuthErrorKind] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.kind = kind or _kind_for_status(status_code)
        self.extra = dict(extra or {})
        self.headers = dict(headers or {}) if headers else None

    @classmethod
    def of(
        cls,
        kind: AuthErrorKind,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> "AuthServiceError":
        return cls(
            code or _DEFAULT_CODES[kind],
            message,
            status_code or ERROR_STATUS[kind],
            kind=kind,
            extra=extra,
            headers=headers,
        )


def _kind_for_status(status_code: int) -> AuthErrorKind:
    for kind, status in ERROR_STATUS.items():
        if status == status_code:
            return kind
    return "InvalidInput" if status_code < 500 else "Unavailable"


@dataclass(frozen=True)
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def coerce_uuid(value: Any, *, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise AuthServiceError.of("InvalidInput", f"{field} is not a valid identifier.") from None


def normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or not _EMAIL_PATTERN.match(value):
        raise AuthServiceError.of("InvalidInput", "A valid email address is required.", code="auth.invalid_email")
    return value


def normalize_phone(phone: Optional[str]) -> str:
    """Reduce a phone number to E.164 (``+15551234567``)."""
    value = _PHONE_STRIP.sub("", (phone or "").strip())
    if value.startswith("00"):
        value = "+" + value[2:]
    if not _E164_PATTERN.match(value):
        raise AuthServiceError.of(
            "InvalidInput",
            "Phone numbers must be in E.164 format, e.g. +15551234567.",
            code="auth.invalid_phone",
        )
    return value


def normalize_identifier(identifier_type: IdentifierType, value: Optional[str]) -> str:
    if identifier_type in {"phone", "whatsapp_phone"}:
        return normalize_phone(value)
    if identifier_type == "email":
        return normalize_email(value)
    cleaned = (value or "").strip()
    if not cleaned:
        raise AuthServiceError.of("InvalidInput", "Identifier value is required.")
    return cleaned


def hash_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()


def safe_ip_value(ip_value: Optional[str]) -> Optional[str]:
    if not ip_value:
        return None
    try:
        ipaddress.ip_address(ip_value)
        return ip_value
    except ValueError:
        return None


def enforce_rate_limit(scope: str, identifier: Optional[str]) -> None:
    """Apply the configured fixed-window rule for ``scope``; raises ``RateLimited`` when exceeded."""
    rule = get_auth_settings().rate_limit(scope)
    result: RateLimitResult = _check_limit(scope, identifier, limit=rule.limit, window_seconds=rule.window_seconds)
    if not result.allowed:
        retry_after = result.retry_after
        logger.info("Rate limit hit for %s (retry in %ss).", scope, retry_after)
        raise AuthServiceError.of(
            "RateLimited",
            f"Too many requests. Try again in {retry_after} seconds.",
            extra={"retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        ) from None


def record_auth_event(
    session: Session,
    *,
    event_type: str,
    account_id: Optional[uuid.UUID],
    channel: str,
    context: Optional[RequestContext] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    context = context or RequestContext()
    session.add(
        AuthEvent(
            event_type=event_type,
            account_id=account_id,
            channel=channel,
            ip=safe_ip_value(context.ip),
            user_agent_hash=hash_user_agent(context.user_agent),
            details=dict(metadata or {}),
            created_at=utcnow(),
        )
    )


def from_token_error(exc: AuthTokenError) -> AuthServiceError:
    """Every token failure is an authentication failure; the code tells the client why."""
    return AuthServiceError.of("Unauthenticated", str(exc), code=exc.code, extra={"reason": exc.kind})


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit on success; roll back and translate persistence faults otherwise."""
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.info("Integrity conflict rolled back: %s", exc.orig)
        raise AuthServiceError.of("Conflict", "The record was modified concurrently or already exists.") from exc
    except FieldCryptoError as exc:
        session.rollback()
        logger.error("Field encryption unavailable: %s", exc)
        raise AuthServiceError.of("Unavailable", "Secret storage is not configured.", code="auth.crypto_unavailable") from exc
    except DBAPIError as exc:
        session.rollback()
        logger.error("Persistence unavailable: %s", exc, exc_info=True)
        raise AuthServiceError.of("Unavailable", "The identity store is temporarily unavailable.") from exc
    except Exception:
        session.rollback()
        raise


__all__ = [
    "AuthServiceError",
    "RequestContext",
    "atomic",
    "coerce_uuid",
    "enforce_rate_limit",
    "ensure_utc",
    "from_token_error",
    "hash_user_agent",
    "normalize_email",
    "normalize_identifier",
    "normalize_phone",
    "record_auth_event",
    "safe_ip_value",
    "utcnow",
]
