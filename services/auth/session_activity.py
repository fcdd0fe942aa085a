"""Device sessions and the account's own audit trail, read back from what the login flows record."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from core.logging import get_logger
from models.account import Account
from models.auth_audit import AccountSession, AuthEvent
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    coerce_uuid,
    ensure_utc,
    hash_user_agent,
    record_auth_event,
    safe_ip_value,
    utcnow,
)
from services.auth.session_issuer import IssuedSession, SessionClaims, SessionRevocationStore

logger = get_logger(__name__)

LOGIN_EVENT_TYPES = ("login.success", "login.mfa_required", "login_failed", "lock", "logout", "logout_all")
MAX_EVENT_PAGE = 100


@dataclass(frozen=True)
class SessionView:
    id: uuid.UUID
    channel: Optional[str]
    ip: Optional[str]
    issued_at: datetime
    expires_at: datetime
    is_current: bool = False


@dataclass(frozen=True)
class AuthEventView:
    event_type: str
    channel: Optional[str]
    ip: Optional[str]
    created_at: Optional[datetime]
    details: Dict[str, Any] = field(default_factory=dict)


def record_session(
    session,
    account_id: uuid.UUID,
    issued: IssuedSession,
    *,
    channel: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> None:
    context = context or RequestContext()
    session.add(
        AccountSession(
            account_id=account_id,
            jti=issued.jti,
            channel=channel,
            ip=safe_ip_value(context.ip),
            user_agent_hash=hash_user_agent(context.user_agent),
            issued_at=issued.issued_at or utcnow(),
            expires_at=issued.expires_at,
        )
    )


def _view(record: AccountSession, current_jti: Optional[str]) -> SessionView:
    return SessionView(
        id=record.id,
        channel=record.channel,
        ip=record.ip,
        issued_at=ensure_utc(record.issued_at),
        expires_at=ensure_utc(record.expires_at),
        is_current=record.jti == current_jti,
    )


def list_sessions(session, claims: SessionClaims) -> List[SessionView]:
    """Live sessions of the caller's account, newest first."""
    now = utcnow()
    rows = session.execute(
        select(AccountSession)
        .where(AccountSession.account_id == claims.subject, AccountSession.revoked_at.is_(None))
        .order_by(AccountSession.issued_at.desc())
        .execution_options(populate_existing=True)
    ).scalars().all()
    return [_view(row, claims.jti) for row in rows if ensure_utc(row.expires_at) > now]


def revoke_session(
    session,
    claims: SessionClaims,
    session_id,
    *,
    context: Optional[RequestContext] = None,
) -> SessionView:
    record_id = coerce_uuid(session_id, field="sessionId")
    with atomic(session):
        record = session.execute(
            select(AccountSession)
            .where(AccountSession.id == record_id, AccountSession.account_id == claims.subject)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise AuthServiceError.of("NotFound", "Session not found.", code="auth.session_not_found")
        if record.revoked_at is None:
            SessionRevocationStore(session).revoke_jti(
                record.account_id,
                record.jti,
                expires_at=record.expires_at,
                reason="session_revoked",
            )
            record.revoked_at = utcnow()
            record_auth_event(
                session,
                event_type="session.revoked",
                account_id=record.account_id,
                channel="session",
                context=context,
                metadata={"sessionId": str(record.id)},
            )
    return _view(record, claims.jti)


def revoke_other_sessions(session, claims: SessionClaims, *, context: Optional[RequestContext] = None) -> int:
    """Sign out every other device; the calling session stays valid."""
    with atomic(session):
        rows = session.execute(
            select(AccountSession)
            .where(
                AccountSession.account_id == claims.subject,
                AccountSession.revoked_at.is_(None),
                AccountSession.jti != claims.jti,
            )
            .with_for_update()
        ).scalars().all()
        store = SessionRevocationStore(session)
        for row in rows:
            store.revoke_jti(row.account_id, row.jti, expires_at=row.expires_at, reason="revoke_others")
        record_auth_event(
            session,
            event_type="session.revoked_others",
            account_id=claims.subject,
            channel="session",
            context=context,
            metadata={"count": len(rows)},
        )
    logger.info("Account %s revoked %d other sessions.", claims.subject, len(rows))
    return len(rows)


def list_auth_events(
    session,
    account_id,
    *,
    limit: int = 20,
    event_types: Optional[Iterable[str]] = None,
) -> List[AuthEventView]:
    query = select(AuthEvent).where(AuthEvent.account_id == coerce_uuid(account_id, field="accountId"))
    if event_types is not None:
        query = query.where(AuthEvent.event_type.in_(list(event_types)))
    rows = session.execute(
        query.order_by(AuthEvent.created_at.desc()).limit(max(1, min(int(limit), MAX_EVENT_PAGE)))
    ).scalars().all()
    return [
        AuthEventView(
            event_type=row.event_type,
            channel=row.channel,
            ip=row.ip,
            created_at=ensure_utc(row.created_at),
            details=dict(row.details or {}),
        )
        for row in rows
    ]


def login_activity(session, account_id, *, limit: int = 20) -> List[AuthEventView]:
    return list_auth_events(session, account_id, limit=limit, event_types=LOGIN_EVENT_TYPES)


def account_audit_log(session, account_id, *, limit: int = 50) -> List[AuthEventView]:
    """Administrator view of any account's trail; unknown accounts are a 404, not an empty list."""
    account = session.get(Account, coerce_uuid(account_id, field="accountId"))
    if account is None:
        raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
    return list_auth_events(session, account.id, limit=limit)


__all__ = [
    "AuthEventView",
    "LOGIN_EVENT_TYPES",
    "SessionView",
    "account_audit_log",
    "list_auth_events",
    "list_sessions",
    "login_activity",
    "record_session",
    "revoke_other_sessions",
    "revoke_session",
]
