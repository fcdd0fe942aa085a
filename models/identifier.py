"""Identifiers bound to accounts and the ephemeral records used to prove control of them."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.sql import func

from core.auth.constants import MAX_BINDING_ATTEMPTS
from database import Base


class AccountIdentifier(Base):
    """Typed claim (email, phone, OAuth subject) pointing at an account.

    At most one ``verified`` row may exist per (type, value); revoked values can be claimed again.
    """

    __tablename__ = "account_identifiers"
    __table_args__ = (
        Index(
            "uq_account_identifiers_verified",
            "identifier_type",
            "value",
            unique=True,
            postgresql_where=text("status = 'verified'"),
            sqlite_where=text("status = 'verified'"),
        ),
        Index("ix_account_identifiers_lookup", "identifier_type", "value"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    identifier_type = Column(String(32), nullable=False)
    value = Column(String(320), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(Uuid, nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(Uuid, nullable=True)
    revoked_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class BindingChallenge(Base):
    """Proof-of-control challenge: issued -> verified | expired | attempts_exhausted.

    Only one ``issued`` row may exist per (account, type, value).
    """

    __tablename__ = "binding_challenges"
    __table_args__ = (
        Index("ix_binding_challenges_account_value", "account_id", "identifier_value"),
        Index(
            "uq_binding_challenges_issued",
            "account_id",
            "identifier_type",
            "identifier_value",
            unique=True,
            postgresql_where=text("status = 'issued'"),
            sqlite_where=text("status = 'issued'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    identifier_type = Column(String(32), nullable=False)
    identifier_value = Column(String(320), nullable=False)
    code_hash = Column(String(64), nullable=False)
    code_encrypted = Column(Text, nullable=False)
    status = Column(String(24), nullable=False, default="issued")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=MAX_BINDING_ATTEMPTS)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    consumed_at = Column(DateTime(timezone=True), nullable=True)


class OAuthExchangeState(Base):
    """Single-use correlation record between the provider redirect and its callback."""

    __tablename__ = "oauth_exchange_states"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    nonce_hash = Column(String(64), nullable=False, unique=True)
    provider = Column(String(32), nullable=False)
    redirect_uri = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)


__all__ = ["AccountIdentifier", "BindingChallenge", "OAuthExchangeState"]
