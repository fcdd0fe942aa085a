"""Pydantic schemas for the authentication API (binding, OAuth, MFA, password, registration, session)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

AuthErrorCode = Literal[
    "auth.invalid_input",
    "auth.invalid_phone",
    "auth.invalid_email",
    "auth.invalid_password",
    "auth.invalid_credentials",
    "auth.account_locked",
    "auth.account_disabled",
    "auth.identifier_conflict",
    "auth.identifier_already_verified",
    "auth.challenge_not_found",
    "auth.challenge_expired",
    "auth.challenge_attempts_exhausted",
    "auth.rate_limited",
    "auth.oauth_invalid_state",
    "auth.oauth_state_expired",
    "auth.oauth_state_consumed",
    "auth.oauth_state_mismatch",
    "auth.provider_error",
    "auth.provider_exchange_failed",
    "auth.provider_no_email",
    "auth.provider_misconfigured",
    "auth.mfa_invalid_code",
    "auth.mfa_already_enabled",
    "auth.mfa_not_enabled",
    "auth.mfa_setup_required",
    "auth.mfa_self_reset",
    "auth.email_conflict",
    "auth.identifier_revoked",
    "auth.identifier_not_found",
    "auth.last_sign_in_method",
    "auth.provider_email_unverified",
    "auth.session_not_found",
    "auth.token_expired",
    "auth.token_invalid",
    "auth.token_revoked",
    "auth.required",
    "auth.forbidden",
    "auth.unavailable",
]

BindableIdentifierType = Literal["phone", "whatsapp_phone"]


class BindingRequest(BaseModel):
    identifierType: BindableIdentifierType = Field(default="phone", description="Channel to bind.")
    value: str = Field(..., min_length=3, max_length=32, description="Phone number, E.164 preferred.")


class BindingRequestResponse(BaseModel):
    challengeId: str
    expiresAt: datetime
    reused: bool = False
    channelNumber: Optional[str] = Field(
        default=None,
        description="Number the user must message the code to (WhatsApp/SMS inbound proof).",
    )
    code: Optional[str] = Field(
        default=None,
        description="Only returned for inbound proof, where the user sends the code from the bound number.",
    )


class BindingVerifyRequest(BaseModel):
    challengeId: str
    code: str = Field(..., min_length=1, max_length=16)


class BindingVerifyResponse(BaseModel):
    verified: bool
    attemptsRemaining: int
    identifierId: Optional[int] = None


class OAuthProviderSchema(BaseModel):
    name: str
    configured: bool


class OAuthProvidersResponse(BaseModel):
    providers: List[OAuthProviderSchema]


class PortalScopeSchema(BaseModel):
    kind: str
    organizationIds: List[str] = Field(default_factory=list)
    customerIds: List[str] = Field(default_factory=list)
    projectIds: List[str] = Field(default_factory=list)
    aggregate: bool = False
    activeCustomerId: Optional[str] = None


class LoginResponse(BaseModel):
    accountId: str
    accountStatus: str
    mfaRequired: bool = False
    sessionToken: Optional[str] = None
    expiresIn: Optional[int] = None
    mfaToken: Optional[str] = None
    created: bool = False
    scope: Optional[PortalScopeSchema] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class MfaSetupResponse(BaseModel):
    secret: str
    provisioningUri: str


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class MfaEnableResponse(BaseModel):
    enabled: bool
    backupCodes: List[str]


class MfaDisableResponse(BaseModel):
    disabled: bool


class MfaStatusResponse(BaseModel):
    enabled: bool
    pendingSetup: bool
    backupCodesRemaining: int
    enabledAt: Optional[datetime] = None


class MfaBackupCodesResponse(BaseModel):
    backupCodes: List[str]


class MfaChallengeRequest(BaseModel):
    mfaToken: str
    code: str = Field(..., min_length=6, max_length=16)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetResponse(BaseModel):
    sent: bool
    expiresIn: Optional[int] = None


class PasswordResetConfirmRequest(BaseModel):
    token: str
    newPassword: str


class PasswordResetConfirmResponse(BaseModel):
    success: bool


class SessionResponse(BaseModel):
    accountId: str
    role: str
    expiresAt: datetime
    scope: PortalScopeSchema


class ScopeSwitchRequest(BaseModel):
    viewAllCustomers: bool = False
    customerId: Optional[str] = None


class LogoutRequest(BaseModel):
    allDevices: bool = False


class LogoutResponse(BaseModel):
    success: bool


class LinkedAccountSchema(BaseModel):
    identifierId: int
    provider: str
    maskedSubject: str
    linkedAt: Optional[datetime] = None


class LinkedAccountsResponse(BaseModel):
    accounts: List[LinkedAccountSchema]


class OAuthLinkRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    redirectUri: Optional[str] = None


class OAuthLinkResponse(BaseModel):
    linked: bool
    provider: str


class OAuthUnlinkResponse(BaseModel):
    unlinked: int


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    displayName: Optional[str] = Field(default=None, max_length=255)


class RegisterResponse(BaseModel):
    accountId: str
    accountStatus: str
    verificationExpiresIn: int


class EmailVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1)


class EmailVerifyResponse(BaseModel):
    verified: bool
    alreadyVerified: bool = False


class EmailResendRequest(BaseModel):
    email: EmailStr


class EmailResendResponse(BaseModel):
    sent: bool
    expiresIn: Optional[int] = None


class DeviceSessionSchema(BaseModel):
    id: str
    channel: Optional[str] = None
    ip: Optional[str] = None
    issuedAt: datetime
    expiresAt: datetime
    current: bool = False


class DeviceSessionsResponse(BaseModel):
    sessions: List[DeviceSessionSchema]


class RevokeOthersResponse(BaseModel):
    revoked: int


class AuthEventSchema(BaseModel):
    eventType: str
    channel: Optional[str] = None
    ip: Optional[str] = None
    createdAt: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AuthEventsResponse(BaseModel):
    events: List[AuthEventSchema]
