"""Email/password first factor with lockout, plus the password-reset token flow."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select

from core.auth.settings import get_auth_settings
from core.logging import get_logger, mask_email
from models.account import Account
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    enforce_rate_limit,
    ensure_utc,
    normalize_email,
    record_auth_event,
    utcnow,
)
from services.auth.flows import LoginResult, complete_first_factor
from services.auth.session_issuer import SessionRevocationStore
from services.auth_tokens import AuthTokenError, consume_magic_token, issue_magic_token

logger = get_logger(__name__)

_PASSWORD_MIN_LENGTH = 12
_UPPER_REGEX = re.compile(r"[A-Z]")
_LOWER_REGEX = re.compile(r"[a-z]")
_DIGIT_REGEX = re.compile(r"\d")
_SYMBOL_REGEX = re.compile(r"[^A-Za-z0-9]")


def _noop_send_email(*args, **kwargs) -> None:
    logger.debug("Email delivery disabled; skipping send.")


send_password_reset_email = _noop_send_email


@dataclass(frozen=True)
class PasswordResetRequestResult:
    sent: bool
    expires_in: int


@lru_cache(maxsize=1)
def get_password_hasher() -> PasswordHasher:
    settings = get_auth_settings()
    return PasswordHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )


def validate_password_strength(password: Optional[str]) -> None:
    value = password or ""
    if len(value) < _PASSWORD_MIN_LENGTH:
        raise AuthServiceError.of(
            "InvalidInput",
            f"Passwords need at least {_PASSWORD_MIN_LENGTH} characters.",
            code="auth.invalid_password",
        )
    missing = [
        label
        for label, pattern in (
            ("an uppercase letter", _UPPER_REGEX),
            ("a lowercase letter", _LOWER_REGEX),
            ("a digit", _DIGIT_REGEX),
            ("a symbol", _SYMBOL_REGEX),
        )
        if not pattern.search(value)
    ]
    if missing:
        raise AuthServiceError.of(
            "InvalidInput",
            "Passwords must contain " + ", ".join(missing) + ".",
            code="auth.invalid_password",
        )


def hash_password(password: str) -> str:
    validate_password_strength(password)
    return get_password_hasher().hash(password)


def _invalid_credentials() -> AuthServiceError:
    return AuthServiceError.of("Unauthenticated", "Email or password is incorrect.", code="auth.invalid_credentials")


class LoginUserUseCase:
    """Password check, lockout bookkeeping and hand-off to the shared login completion."""

    def __init__(self, session, payload: Dict[str, Any], context: RequestContext):
        self.session = session
        self.payload = payload
        self.context = context
        self.now = utcnow()
        self.email = normalize_email(payload.get("email"))
        self.settings = get_auth_settings()

    def execute(self) -> LoginResult:
        self._enforce_limits()
        failure: Optional[AuthServiceError] = None
        with atomic(self.session):
            account = self.session.execute(
                select(Account)
                .where(Account.primary_email == self.email)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if account is None or not account.password_hash:
                failure = _invalid_credentials()
            else:
                failure = self._verify_credentials(account)
        if failure is not None:
            raise failure
        return complete_first_factor(self.session, account, channel="password", context=self.context)

    def _enforce_limits(self) -> None:
        enforce_rate_limit("login.ip", self.context.ip)
        enforce_rate_limit("login.email", self.email)

    def _verify_credentials(self, account: Account) -> Optional[AuthServiceError]:
        locked_until = ensure_utc(account.locked_until)
        if locked_until and locked_until > self.now:
            return AuthServiceError.of(
                "AttemptsExhausted",
                "The account is temporarily locked. Try again later.",
                code="auth.account_locked",
                extra={"lockedUntil": locked_until.isoformat()},
            )
        hasher = get_password_hasher()
        try:
            hasher.verify(account.password_hash, self.payload.get("password") or "")
        except VerifyMismatchError:
            self._handle_failed_attempt(account)
            return _invalid_credentials()
        except (InvalidHashError, VerificationError):
            logger.warning("Stored password hash for account %s cannot be verified.", account.id)
            return _invalid_credentials()
        if hasher.check_needs_rehash(account.password_hash):
            account.password_hash = hasher.hash(self.payload.get("password") or "")
        account.failed_attempts = 0
        account.locked_until = None
        account.last_login_at = self.now
        return None

    def _handle_failed_attempt(self, account: Account) -> None:
        attempts = int(account.failed_attempts or 0) + 1
        account.failed_attempts = attempts
        if attempts >= self.settings.login_failure_limit:
            account.locked_until = self.now + timedelta(seconds=self.settings.account_lock_seconds)
        record_auth_event(
            self.session,
            event_type="lock" if account.locked_until else "login_failed",
            account_id=account.id,
            channel="password",
            context=self.context,
            metadata={"failedAttempts": attempts},
        )


def login_user(session, payload: Dict[str, Any], *, context: RequestContext) -> LoginResult:
    return LoginUserUseCase(session, payload, context).execute()


def request_password_reset(session, *, email: str, context: RequestContext) -> PasswordResetRequestResult:
    """Always reports ``sent`` so callers cannot learn which emails exist."""
    normalized = normalize_email(email)
    enforce_rate_limit("password_reset.email", normalized)
    ttl = get_auth_settings().password_reset_ttl_seconds
    token_value: Optional[str] = None
    with atomic(session):
        account = session.execute(select(Account).where(Account.primary_email == normalized)).scalar_one_or_none()
        if account is not None and account.status not in {"suspended", "deactivated"}:
            token = issue_magic_token(
                session,
                account_id=account.id,
                token_type="password_reset",
                identifier=normalized,
                expires_in=timedelta(seconds=ttl),
            )
            token_value = token.token
            record_auth_event(
                session,
                event_type="password_reset_request",
                account_id=account.id,
                channel="email",
                context=context,
                metadata={"tokenId": str(token.id)},
            )
    if token_value:
        send_password_reset_email(email=normalized, token=token_value)
    else:
        logger.info("Password reset requested for unknown or disabled email %s.", mask_email(normalized))
    return PasswordResetRequestResult(sent=True, expires_in=ttl)


def confirm_password_reset(session, *, token: str, new_password: str, context: RequestContext) -> bool:
    hashed = hash_password(new_password)
    now: datetime = utcnow()
    with atomic(session):
        try:
            magic = consume_magic_token(session, token=token, token_type="password_reset", now=now)
        except AuthTokenError as exc:
            kind = "Expired" if exc.kind == "TokenExpired" else "InvalidInput"
            raise AuthServiceError.of(kind, str(exc), code=exc.code) from exc
        account = session.get(Account, magic.account_id)
        if account is None:
            raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
        account.password_hash = hashed
        account.failed_attempts = 0
        account.locked_until = None
        SessionRevocationStore(session).revoke_all(account.id, reason="password_reset")
        record_auth_event(
            session,
            event_type="password_reset",
            account_id=account.id,
            channel="email",
            context=context,
            metadata={"tokenId": str(magic.id)},
        )
    return True


__all__ = [
    "LoginUserUseCase",
    "PasswordResetRequestResult",
    "confirm_password_reset",
    "get_password_hasher",
    "hash_password",
    "login_user",
    "request_password_reset",
    "send_password_reset_email",
    "validate_password_strength",
]
