"""Auth service submodule exports."""

from __future__ import annotations

from .common import AuthServiceError, RequestContext
from .scope_resolver import EMPTY_SCOPE, PortalScope, ProjectGrant, ScopeResolver, authorize
from .session_issuer import IssuedSession, SessionClaims, SessionIssuer, SessionRevocationStore
from .oauth_broker import AuthRedirect, OAuthBroker, get_oauth_broker
from .identity_resolver import IdentityResolver, InboundResolution, ResolvedIdentity
from .binding_ledger import BindingIssue, BindingLedger, BindingVerification, request_binding, verify_binding
from .mfa import MfaService
from .flows import (
    LoginResult,
    begin_oauth,
    complete_mfa_challenge,
    complete_oauth,
    link_oauth,
    logout,
    switch_scope,
)
from .password import (
    PasswordResetRequestResult,
    confirm_password_reset,
    login_user,
    request_password_reset,
)
from .registration import (
    EmailVerificationResult,
    RegistrationResult,
    register_with_email,
    resend_verification,
    verify_email,
)
from .session_activity import (
    AuthEventView,
    SessionView,
    list_auth_events,
    list_sessions,
    login_activity,
    revoke_other_sessions,
    revoke_session,
)
from .admin import (
    IdentifierView,
    LinkedAccountView,
    admin_verify_identifier,
    approve_account,
    change_primary_email,
    list_identifiers,
    list_linked_accounts,
    resolve_inbound,
    revoke_identifier,
    suspend_account,
    unlink_provider,
)

__all__ = [
    "AuthEventView",
    "AuthRedirect",
    "AuthServiceError",
    "BindingIssue",
    "BindingLedger",
    "BindingVerification",
    "EMPTY_SCOPE",
    "EmailVerificationResult",
    "IdentifierView",
    "IdentityResolver",
    "InboundResolution",
    "IssuedSession",
    "LinkedAccountView",
    "LoginResult",
    "MfaService",
    "OAuthBroker",
    "PasswordResetRequestResult",
    "PortalScope",
    "ProjectGrant",
    "RegistrationResult",
    "RequestContext",
    "ResolvedIdentity",
    "ScopeResolver",
    "SessionClaims",
    "SessionIssuer",
    "SessionRevocationStore",
    "SessionView",
    "admin_verify_identifier",
    "approve_account",
    "authorize",
    "begin_oauth",
    "change_primary_email",
    "complete_mfa_challenge",
    "complete_oauth",
    "confirm_password_reset",
    "get_oauth_broker",
    "link_oauth",
    "list_auth_events",
    "list_identifiers",
    "list_linked_accounts",
    "list_sessions",
    "login_activity",
    "login_user",
    "logout",
    "register_with_email",
    "request_binding",
    "request_password_reset",
    "resend_verification",
    "resolve_inbound",
    "revoke_identifier",
    "revoke_other_sessions",
    "revoke_session",
    "suspend_account",
    "switch_scope",
    "unlink_provider",
    "verify_binding",
    "verify_email",
]
