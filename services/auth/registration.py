"""Self-service email sign-up and the email-verification token flow.

New accounts start in ``pending_approval`` with a pending ``email`` identifier; following the
emailed link verifies the identifier, approval is still an administrator's call.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from core.auth.settings import get_auth_settings
from core.logging import get_logger, mask_email
from models.account import Account
from models.identifier import AccountIdentifier
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    enforce_rate_limit,
    normalize_email,
    record_auth_event,
    utcnow,
)
from services.auth.password import hash_password
from services.auth_tokens import AuthTokenError, consume_magic_token, issue_magic_token

logger = get_logger(__name__)

_DISABLED_STATUSES = {"suspended", "deactivated"}


def _noop_send_email(*args, **kwargs) -> None:
    logger.debug("Email delivery disabled; skipping send.")


send_verification_email = _noop_send_email


@dataclass(frozen=True)
class RegistrationResult:
    account_id: uuid.UUID
    email: str
    status: str
    verification_expires_in: int


@dataclass(frozen=True)
class VerificationEmailResult:
    sent: bool
    expires_in: int


@dataclass(frozen=True)
class EmailVerificationResult:
    account_id: uuid.UUID
    email: str
    already_verified: bool = False


def _issue_verification(session, account: Account, email: str, ttl: int, context: Optional[RequestContext]) -> str:
    token = issue_magic_token(
        session,
        account_id=account.id,
        token_type="email_verification",
        identifier=email,
        expires_in=timedelta(seconds=ttl),
    )
    record_auth_event(
        session,
        event_type="email_verification.sent",
        account_id=account.id,
        channel="email",
        context=context,
        metadata={"tokenId": str(token.id)},
    )
    return token.token


def register_with_email(
    session,
    *,
    email: str,
    password: str,
    display_name: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> RegistrationResult:
    context = context or RequestContext()
    normalized = normalize_email(email)
    enforce_rate_limit("register.ip", context.ip)
    hashed = hash_password(password)
    ttl = get_auth_settings().email_verification_ttl_seconds
    with atomic(session):
        taken = session.execute(select(Account.id).where(Account.primary_email == normalized)).first()
        claimed = session.execute(
            select(AccountIdentifier.id).where(
                AccountIdentifier.identifier_type == "email",
                AccountIdentifier.value == normalized,
                AccountIdentifier.status == "verified",
            )
        ).first()
        if taken is not None or claimed is not None:
            raise AuthServiceError.of("Conflict", "An account with this email already exists.", code="auth.email_conflict")
        account = Account(
            id=uuid.uuid4(),
            primary_email=normalized,
            display_name=(display_name or "").strip() or normalized.split("@", 1)[0],
            password_hash=hashed,
            status="pending_approval",
            account_type="customer",
            role="user",
            signup_channel="email",
        )
        session.add(account)
        session.flush()
        session.add(AccountIdentifier(account_id=account.id, identifier_type="email", value=normalized, status="pending"))
        record_auth_event(
            session,
            event_type="account.registered",
            account_id=account.id,
            channel="email",
            context=context,
            metadata={"email": mask_email(normalized)},
        )
        token_value = _issue_verification(session, account, normalized, ttl, context)
    send_verification_email(email=normalized, token=token_value)
    logger.info("Registered pending account %s (%s).", account.id, mask_email(normalized))
    return RegistrationResult(
        account_id=account.id,
        email=normalized,
        status=account.status,
        verification_expires_in=ttl,
    )


def verify_email(session, *, token: str, context: Optional[RequestContext] = None) -> EmailVerificationResult:
    now = utcnow()
    with atomic(session):
        try:
            magic = consume_magic_token(session, token=token, token_type="email_verification", now=now)
        except AuthTokenError as exc:
            kind = "Expired" if exc.kind == "TokenExpired" else "InvalidInput"
            raise AuthServiceError.of(kind, str(exc), code=exc.code) from exc
        account = session.execute(
            select(Account)
            .where(Account.id == magic.account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
        rows = session.execute(
            select(AccountIdentifier)
            .where(
                AccountIdentifier.identifier_type == "email",
                AccountIdentifier.value == magic.identifier,
                AccountIdentifier.status.in_(("pending", "verified")),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        owner = next((row for row in rows if row.status == "verified"), None)
        if owner is not None and owner.account_id != account.id:
            raise AuthServiceError.of(
                "Conflict",
                "This email is already verified on another account.",
                code="auth.identifier_conflict",
            )
        if owner is not None:
            return EmailVerificationResult(account_id=account.id, email=magic.identifier, already_verified=True)
        pending = next((row for row in rows if row.account_id == account.id), None)
        if pending is None:
            raise AuthServiceError.of(
                "InvalidInput",
                "This link no longer matches an email on your account.",
                code="auth.token_invalid",
            )
        pending.status = "verified"
        pending.verified_at = now
        pending.verified_by = account.id
        if account.primary_email == magic.identifier:
            account.email_verified_at = now
        record_auth_event(
            session,
            event_type="email.verified",
            account_id=account.id,
            channel="email",
            context=context,
            metadata={"tokenId": str(magic.id)},
        )
    logger.info("Email %s verified for account %s.", mask_email(magic.identifier), account.id)
    return EmailVerificationResult(account_id=account.id, email=magic.identifier)


def resend_verification(session, *, email: str, context: Optional[RequestContext] = None) -> VerificationEmailResult:
    """Always reports ``sent`` so callers cannot learn which emails exist."""
    normalized = normalize_email(email)
    enforce_rate_limit("email_verification.email", normalized)
    ttl = get_auth_settings().email_verification_ttl_seconds
    token_value: Optional[str] = None
    with atomic(session):
        account = session.execute(select(Account).where(Account.primary_email == normalized)).scalar_one_or_none()
        pending = None
        if account is not None and account.status not in _DISABLED_STATUSES:
            pending = session.execute(
                select(AccountIdentifier.id).where(
                    AccountIdentifier.account_id == account.id,
                    AccountIdentifier.identifier_type == "email",
                    AccountIdentifier.value == normalized,
                    AccountIdentifier.status == "pending",
                )
            ).first()
        if pending is not None:
            token_value = _issue_verification(session, account, normalized, ttl, context)
    if token_value:
        send_verification_email(email=normalized, token=token_value)
    else:
        logger.info("Verification resend skipped for %s.", mask_email(normalized))
    return VerificationEmailResult(sent=True, expires_in=ttl)


__all__ = [
    "EmailVerificationResult",
    "RegistrationResult",
    "VerificationEmailResult",
    "register_with_email",
    "resend_verification",
    "send_verification_email",
    "verify_email",
]
