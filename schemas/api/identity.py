"""Pydantic schemas for identifier management and account administration."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class IdentifierSchema(BaseModel):
    id: int
    identifierType: str
    maskedValue: str
    status: str
    isPrimary: bool = False
    verifiedAt: Optional[datetime] = None
    revokedAt: Optional[datetime] = None


class IdentifierListResponse(BaseModel):
    identifiers: List[IdentifierSchema]


class IdentifierRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class AccountSummarySchema(BaseModel):
    id: str
    primaryEmail: str
    emailVerified: bool
    status: str
    accountType: str
    role: str
    approvedAt: Optional[datetime] = None


class PrimaryEmailChangeRequest(BaseModel):
    email: EmailStr


class AccountApproveRequest(BaseModel):
    accountType: Literal["company", "customer"]
    organizationId: Optional[str] = None
    customerId: Optional[str] = None
    role: Optional[str] = Field(default=None, description="Organisation role or customer role (CLIENT_ADMIN/FINANCE/OPS/VIEWER).")


class AccountSuspendRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class InboundResolutionResponse(BaseModel):
    status: Literal["verified", "pending", "revoked", "unknown"]
    identifierType: str
    maskedValue: str
    accountId: Optional[str] = None
    identifierId: Optional[int] = None


class MfaResetRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=500, description="Why the second factor is being cleared.")


class MfaResetResponse(BaseModel):
    reset: bool
