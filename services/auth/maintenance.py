"""Retention sweeps for expired auth state: challenges, OAuth states, magic tokens, sessions and revocations."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.env import env_int
from core.logging import get_logger
from database import SessionLocal
from models.auth_audit import AccountSession, AuthEvent, AuthToken
from models.identifier import OAuthExchangeState
from services.auth.binding_ledger import BindingLedger
from services.auth.common import utcnow
from services.auth.session_issuer import SessionRevocationStore

logger = get_logger(__name__)


def _delete(session: Session, statement) -> int:
    result = session.execute(statement.execution_options(synchronize_session=False))
    return max(result.rowcount or 0, 0)


def _purge_oauth_states(session: Session, now: datetime) -> int:
    return _delete(session, delete(OAuthExchangeState).where(OAuthExchangeState.expires_at < now))


def _purge_auth_tokens(session: Session, now: datetime) -> int:
    return _delete(session, delete(AuthToken).where(AuthToken.expires_at < now))


def _purge_account_sessions(session: Session, now: datetime) -> int:
    return _delete(session, delete(AccountSession).where(AccountSession.expires_at < now))


def _purge_auth_events(session: Session, now: datetime) -> int:
    days = max(env_int("RETENTION_AUTH_EVENT_DAYS", 365, minimum=0), 0)
    if days == 0:
        return 0
    return _delete(session, delete(AuthEvent).where(AuthEvent.created_at < now - timedelta(days=days)))


def purge_expired_auth_state(session: Optional[Session] = None, *, now: Optional[datetime] = None) -> Dict[str, int]:
    """Remove auth records past their validity window. Returns deleted row counts per table."""
    owns_session = session is None
    session = session or SessionLocal()
    snapshot = now or utcnow()
    stats: Dict[str, int] = {}
    try:
        stats["binding_challenges"] = BindingLedger(session, clock=lambda: snapshot).purge_expired(snapshot)
        stats["oauth_exchange_states"] = _purge_oauth_states(session, snapshot)
        stats["auth_tokens"] = _purge_auth_tokens(session, snapshot)
        stats["session_revocations"] = SessionRevocationStore(session, clock=lambda: snapshot).purge(snapshot)
        stats["account_sessions"] = _purge_account_sessions(session, snapshot)
        stats["auth_events"] = _purge_auth_events(session, snapshot)
        session.commit()
    except SQLAlchemyError:
        logger.exception("Auth state purge failed; rolling back changes.")
        session.rollback()
        raise
    finally:
        if owns_session:
            session.close()

    total = sum(stats.values())
    if total:
        logger.info("Auth state purge removed %d stale rows: %s", total, stats)
    else:
        logger.debug("Auth state purge finished. Nothing matched.")
    return stats


__all__ = ["purge_expired_auth_state"]
