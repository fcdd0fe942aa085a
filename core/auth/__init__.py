"""Auth-related shared utilities."""

from .constants import (
    ACTIVE_ACCOUNT_STATUSES,
    BINDABLE_IDENTIFIER_TYPES,
    ERROR_STATUS,
    IDENTIFIER_TYPES,
    OAUTH_PROVIDERS,
    AccountStatus,
    AccountType,
    AuthErrorKind,
    ChallengeStatus,
    IdentifierStatus,
    IdentifierType,
    OAuthProviderName,
)
from .settings import AuthSettings, OAuthProviderSettings, get_auth_settings, load_auth_settings

__all__ = [
    "ACTIVE_ACCOUNT_STATUSES",
    "AccountStatus",
    "AccountType",
    "AuthErrorKind",
    "AuthSettings",
    "BINDABLE_IDENTIFIER_TYPES",
    "ChallengeStatus",
    "ERROR_STATUS",
    "IDENTIFIER_TYPES",
    "IdentifierStatus",
    "IdentifierType",
    "OAUTH_PROVIDERS",
    "OAuthProviderName",
    "OAuthProviderSettings",
    "get_auth_settings",
    "load_auth_settings",
]
