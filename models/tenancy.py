"""Organisation -> customer -> project hierarchy and the memberships that grant portal scope."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from database import Base


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    slug = Column(String(160), unique=True, nullable=True)
    name = Column(String(160), nullable=False)
    status = Column(String(32), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Customer(Base):
    """External client of an organisation (an offtaker, asset owner, ...)."""

    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OrganizationMember(Base):
    """Company (internal staff) membership."""

    __tablename__ = "organization_members"

    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String(32), nullable=False, default="member")
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CustomerMember(Base):
    """External customer-user membership."""

    __tablename__ = "customer_members"

    customer_id = Column(Uuid, ForeignKey("customers.id", ondelete="CASCADE"), primary_key=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String(32), nullable=False, default="VIEWER")
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CustomerProjectGrant(Base):
    __tablename__ = "customer_project_grants"
    __table_args__ = (UniqueConstraint("customer_id", "project_id", name="uq_customer_project_grant"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    access_level = Column(String(16), nullable=False, default="full")
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "Customer",
    "CustomerMember",
    "CustomerProjectGrant",
    "Organization",
    "OrganizationMember",
    "Project",
]
