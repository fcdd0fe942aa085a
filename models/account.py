"""Accounts and their typed MFA state."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """Internal identity. Never deleted; ``status`` moves to ``deactivated`` instead."""

    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    primary_email = Column(String(320), unique=True, nullable=False)
    email_verified_at = Column(DateTime(timezone=True), nullable=True)
    display_name = Column(String(255), nullable=True)
    password_hash = Column(Text, nullable=True)
    role = Column(String(16), nullable=False, default="user")
    account_type = Column(String(16), nullable=False, default="customer")
    status = Column(String(32), nullable=False, default="pending_approval")
    signup_channel = Column(String(32), nullable=False, default="email")
    failed_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    mfa = relationship("AccountMfa", uselist=False, back_populates="account", lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa and self.mfa.enabled)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<Account id={self.id} status={self.status!r} type={self.account_type!r}>"


class AccountMfa(Base):
    """One row per account; secrets are Fernet-encrypted."""

    __tablename__ = "account_mfa"

    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    secret_encrypted = Column(Text, nullable=True)
    pending_secret_encrypted = Column(Text, nullable=True)
    enabled_at = Column(DateTime(timezone=True), nullable=True)
    disabled_at = Column(DateTime(timezone=True), nullable=True)
    backup_codes_generated_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="mfa")


class MfaBackupCode(Base):
    __tablename__ = "mfa_backup_codes"
    __table_args__ = (UniqueConstraint("account_id", "code_hash", name="uq_mfa_backup_codes_account_hash"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(64), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


__all__ = ["Account", "AccountMfa", "MfaBackupCode"]
