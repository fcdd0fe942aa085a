"""Centralized constants for authentication and identity flows."""

from __future__ import annotations

from typing import Dict, FrozenSet, Literal

IdentifierType = Literal["email", "phone", "whatsapp_phone", "oauth_subject"]
IdentifierStatus = Literal["pending", "verified", "revoked"]
AccountStatus = Literal["pending_approval", "active", "suspended", "deactivated"]
AccountType = Literal["company", "customer"]
AccountRole = Literal["user", "admin"]
ChallengeStatus = Literal["issued", "verified", "expired", "attempts_exhausted"]
OAuthProviderName = Literal["google", "github", "microsoft"]
CustomerRole = Literal["CLIENT_ADMIN", "FINANCE", "OPS", "VIEWER"]
GrantAccessLevel = Literal["full", "limited", "reports_only"]
AuthTokenType = Literal["password_reset", "email_verification"]

AuthErrorKind = Literal[
    "InvalidInput",
    "NotFound",
    "Conflict",
    "RateLimited",
    "Expired",
    "AttemptsExhausted",
    "ProviderError",
    "Unauthenticated",
    "Forbidden",
    "Unavailable",
]

IDENTIFIER_TYPES: FrozenSet[IdentifierType] = frozenset(["email", "phone", "whatsapp_phone", "oauth_subject"])
BINDABLE_IDENTIFIER_TYPES: FrozenSet[IdentifierType] = frozenset(["phone", "whatsapp_phone"])
OAUTH_PROVIDERS: FrozenSet[OAuthProviderName] = frozenset(["google", "github", "microsoft"])
ACTIVE_ACCOUNT_STATUSES: FrozenSet[AccountStatus] = frozenset(["active"])
CUSTOMER_ROLES: FrozenSet[CustomerRole] = frozenset(["CLIENT_ADMIN", "FINANCE", "OPS", "VIEWER"])

ERROR_STATUS: Dict[AuthErrorKind, int] = {
    "InvalidInput": 400,
    "Unauthenticated": 401,
    "Forbidden": 403,
    "NotFound": 404,
    "Conflict": 409,
    "Expired": 410,
    "AttemptsExhausted": 423,
    "RateLimited": 429,
    "ProviderError": 502,
    "Unavailable": 503,
}

BINDING_CODE_TTL_SECONDS = 15 * 60
MAX_BINDING_ATTEMPTS = 3

__all__ = [
    "ACTIVE_ACCOUNT_STATUSES",
    "BINDING_CODE_TTL_SECONDS",
    "AccountRole",
    "AccountStatus",
    "AccountType",
    "AuthErrorKind",
    "AuthTokenType",
    "BINDABLE_IDENTIFIER_TYPES",
    "CUSTOMER_ROLES",
    "ChallengeStatus",
    "CustomerRole",
    "ERROR_STATUS",
    "GrantAccessLevel",
    "IDENTIFIER_TYPES",
    "IdentifierStatus",
    "IdentifierType",
    "MAX_BINDING_ATTEMPTS",
    "OAUTH_PROVIDERS",
    "OAuthProviderName",
]
