"""Issued sessions, their revocations, single-use magic tokens and the auth event trail."""

from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from database import Base

_JSON = JSON().with_variant(JSONB(), "postgresql")


class AccountSession(Base):
    """One row per issued session token so owners can list and revoke their devices."""

    __tablename__ = "account_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    jti = Column(String(64), nullable=False, unique=True)
    channel = Column(String(32), nullable=True)
    ip = Column(String(64), nullable=True)
    user_agent_hash = Column(String(64), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)


class SessionRevocation(Base):
    """Either a single token (``jti``) or every token issued before ``not_before`` for an account."""

    __tablename__ = "session_revocations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    jti = Column(String(64), nullable=True, unique=True)
    not_before = Column(DateTime(timezone=True), nullable=True)
    reason = Column(String(64), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthToken(Base):
    __tablename__ = "auth_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    token_type = Column(String(32), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True)
    identifier = Column(String(320), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthEvent(Base):
    __tablename__ = "auth_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type = Column(String(64), nullable=False, index=True)
    account_id = Column(Uuid, nullable=True, index=True)
    channel = Column(String(32), nullable=True)
    ip = Column(String(64), nullable=True)
    user_agent_hash = Column(String(64), nullable=True)
    details = Column("metadata", _JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


__all__ = ["AccountSession", "AuthEvent", "AuthToken", "SessionRevocation"]
