"""Authentication endpoints: channel binding, OAuth, MFA, password login and session management."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from core.logging import get_logger, mask_identifier
from database import get_db
from schemas.api.auth import (
    AuthEventSchema,
    AuthEventsResponse,
    BindingRequest,
    BindingRequestResponse,
    BindingVerifyRequest,
    BindingVerifyResponse,
    DeviceSessionSchema,
    DeviceSessionsResponse,
    EmailResendRequest,
    EmailResendResponse,
    EmailVerifyRequest,
    EmailVerifyResponse,
    LinkedAccountSchema,
    LinkedAccountsResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MfaBackupCodesResponse,
    MfaChallengeRequest,
    MfaCodeRequest,
    MfaDisableResponse,
    MfaEnableResponse,
    MfaSetupResponse,
    MfaStatusResponse,
    OAuthLinkRequest,
    OAuthLinkResponse,
    OAuthProviderSchema,
    OAuthProvidersResponse,
    OAuthUnlinkResponse,
    PasswordResetConfirmRequest,
    PasswordResetConfirmResponse,
    PasswordResetRequest,
    PasswordResetResponse,
    PortalScopeSchema,
    RegisterRequest,
    RegisterResponse,
    RevokeOthersResponse,
    ScopeSwitchRequest,
    SessionResponse,
)
from services.auth import admin as identity_admin
from services.auth import flows, registration, session_activity
from services.auth.binding_ledger import BindingLedger
from services.auth.common import AuthServiceError, RequestContext
from services.auth.flows import LoginResult
from services.auth.mfa import MfaService
from services.auth.oauth_broker import OAuthBroker, get_oauth_broker
from services.auth.password import confirm_password_reset, login_user, request_password_reset
from services.auth.scope_resolver import PortalScope
from services.auth.session_activity import AuthEventView
from services.auth.session_issuer import SessionClaims
from web.deps import get_current_session, get_request_context, to_http_exception

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def _noop_send_binding_code(*args, **kwargs) -> None:
    logger.debug("Outbound binding delivery disabled; skipping send.")


send_binding_code = _noop_send_binding_code


def _raise(exc: AuthServiceError) -> None:
    raise to_http_exception(exc) from exc


def _scope_schema(scope: PortalScope) -> PortalScopeSchema:
    return PortalScopeSchema(
        kind=scope.kind,
        organizationIds=sorted(str(value) for value in scope.organization_ids),
        customerIds=sorted(str(value) for value in scope.customer_ids),
        projectIds=sorted(str(value) for value in scope.project_ids),
        aggregate=scope.aggregate,
        activeCustomerId=str(scope.active_customer_id) if scope.active_customer_id else None,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    if result.mfa_required and result.mfa_token is not None:
        return LoginResponse(
            accountId=str(result.account_id),
            accountStatus=result.account_status,
            mfaRequired=True,
            mfaToken=result.mfa_token.token,
            expiresIn=result.mfa_token.expires_in,
            created=result.created,
        )
    return LoginResponse(
        accountId=str(result.account_id),
        accountStatus=result.account_status,
        sessionToken=result.session.token if result.session else None,
        expiresIn=result.session.expires_in if result.session else None,
        created=result.created,
        scope=_scope_schema(result.scope),
    )


# ----------------------------------------------------------------- binding


@router.post("/binding/request", response_model=BindingRequestResponse, summary="Start proof-of-control for a phone channel")
def binding_request_route(
    payload: BindingRequest,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> BindingRequestResponse:
    try:
        issue = BindingLedger(db).request_binding(claims.subject, payload.identifierType, payload.value, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    inbound = bool(issue.channel_number)
    if not inbound:
        send_binding_code(identifier_type=issue.identifier_type, value=issue.identifier_value, code=issue.code)
        logger.info(
            "Binding code dispatched to %s.",
            mask_identifier(issue.identifier_type, issue.identifier_value),
        )
    return BindingRequestResponse(
        challengeId=str(issue.challenge_id),
        expiresAt=issue.expires_at,
        reused=issue.reused,
        channelNumber=issue.channel_number,
        code=issue.code if inbound else None,
    )


@router.post("/binding/verify", response_model=BindingVerifyResponse, summary="Submit a binding code")
def binding_verify_route(
    payload: BindingVerifyRequest,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> BindingVerifyResponse:
    try:
        result = BindingLedger(db).verify_binding(claims.subject, payload.challengeId, payload.code, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return BindingVerifyResponse(
        verified=result.verified,
        attemptsRemaining=result.attempts_remaining,
        identifierId=result.identifier_id,
    )


# ------------------------------------------------------------------- oauth


@router.get("/oauth/providers", response_model=OAuthProvidersResponse, summary="List OAuth providers")
def oauth_providers_route(broker: OAuthBroker = Depends(get_oauth_broker)) -> OAuthProvidersResponse:
    return OAuthProvidersResponse(
        providers=[OAuthProviderSchema(**entry) for entry in broker.available_providers()],
    )


@router.get("/oauth/{provider}/start", status_code=307, summary="Redirect to the provider's consent page")
def oauth_start_route(
    provider: str,
    redirectUri: str = Query(...),
    broker: OAuthBroker = Depends(get_oauth_broker),
    db: Session = Depends(get_db),
) -> RedirectResponse:
    try:
        redirect = flows.begin_oauth(db, provider, redirectUri, broker=broker)
    except AuthServiceError as exc:
        _raise(exc)
    return RedirectResponse(url=redirect.auth_url, status_code=307)


@router.get("/oauth/{provider}/callback", response_model=LoginResponse, summary="Complete the OAuth code exchange")
def oauth_callback_route(
    provider: str,
    state: str,
    code: Optional[str] = None,
    redirectUri: Optional[str] = None,
    error: Optional[str] = None,
    broker: OAuthBroker = Depends(get_oauth_broker),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> LoginResponse:
    if error:
        raise HTTPException(
            status_code=400,
            detail={"code": "auth.provider_denied", "message": f"The provider returned '{error}'."},
        )
    try:
        result = flows.complete_oauth(
            db,
            provider,
            code or "",
            state,
            redirect_uri=redirectUri,
            broker=broker,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _login_response(result)


@router.get("/oauth/linked", response_model=LinkedAccountsResponse, summary="List linked OAuth sign-ins")
def oauth_linked_route(
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> LinkedAccountsResponse:
    try:
        views = identity_admin.list_linked_accounts(db, claims.subject)
    except AuthServiceError as exc:
        _raise(exc)
    return LinkedAccountsResponse(
        accounts=[
            LinkedAccountSchema(
                identifierId=view.identifier_id,
                provider=view.provider,
                maskedSubject=view.masked_subject,
                linkedAt=view.linked_at,
            )
            for view in views
        ]
    )


@router.post("/oauth/{provider}/link", response_model=OAuthLinkResponse, summary="Link a provider sign-in to my account")
def oauth_link_route(
    provider: str,
    payload: OAuthLinkRequest,
    claims: SessionClaims = Depends(get_current_session),
    broker: OAuthBroker = Depends(get_oauth_broker),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> OAuthLinkResponse:
    try:
        resolved = flows.link_oauth(
            db,
            claims,
            provider,
            payload.code,
            payload.state,
            redirect_uri=payload.redirectUri,
            broker=broker,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return OAuthLinkResponse(linked=resolved.linked, provider=provider)


@router.post("/oauth/{provider}/unlink", response_model=OAuthUnlinkResponse, summary="Unlink a provider sign-in")
def oauth_unlink_route(
    provider: str,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> OAuthUnlinkResponse:
    try:
        count = identity_admin.unlink_provider(db, account_id=claims.subject, provider=provider, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return OAuthUnlinkResponse(unlinked=count)


# --------------------------------------------------------------------- mfa


@router.get("/mfa/status", response_model=MfaStatusResponse, summary="Two-factor status")
def mfa_status_route(
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> MfaStatusResponse:
    try:
        state = MfaService(db).status(claims.subject)
    except AuthServiceError as exc:
        _raise(exc)
    return MfaStatusResponse(
        enabled=state.enabled,
        pendingSetup=state.pending_setup,
        backupCodesRemaining=state.backup_codes_remaining,
        enabledAt=state.enabled_at,
    )


@router.post("/mfa/setup", response_model=MfaSetupResponse, summary="Create a pending TOTP secret")
def mfa_setup_route(
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> MfaSetupResponse:
    try:
        result = MfaService(db).setup(claims.subject)
    except AuthServiceError as exc:
        _raise(exc)
    return MfaSetupResponse(secret=result.secret, provisioningUri=result.provisioning_uri)


@router.post("/mfa/verify", response_model=MfaEnableResponse, summary="Confirm TOTP setup and enable MFA")
def mfa_verify_route(
    payload: MfaCodeRequest,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MfaEnableResponse:
    try:
        result = MfaService(db).enable(claims.subject, payload.code, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return MfaEnableResponse(enabled=result.enabled, backupCodes=result.backup_codes)


@router.post("/mfa/disable", response_model=MfaDisableResponse, summary="Disable MFA")
def mfa_disable_route(
    payload: MfaCodeRequest,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MfaDisableResponse:
    try:
        disabled = MfaService(db).disable(claims.subject, payload.code, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return MfaDisableResponse(disabled=disabled)


@router.post(
    "/mfa/backup-codes/regenerate",
    response_model=MfaBackupCodesResponse,
    summary="Replace every backup code",
)
def mfa_regenerate_route(
    payload: MfaCodeRequest,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MfaBackupCodesResponse:
    try:
        codes = MfaService(db).regenerate_backup_codes(claims.subject, payload.code, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return MfaBackupCodesResponse(backupCodes=codes)


@router.post("/mfa/challenge", response_model=LoginResponse, summary="Second factor at sign-in")
def mfa_challenge_route(
    payload: MfaChallengeRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> LoginResponse:
    try:
        result = flows.complete_mfa_challenge(db, payload.mfaToken, payload.code, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return _login_response(result)


# ---------------------------------------------------------------- password


@router.post("/login", response_model=LoginResponse, summary="Email and password sign-in")
def login_route(
    payload: LoginRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> LoginResponse:
    try:
        result = login_user(db, payload.model_dump(), context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return _login_response(result)


@router.post("/password-reset/request", response_model=PasswordResetResponse, summary="Send a password reset link")
def password_reset_request_route(
    payload: PasswordResetRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PasswordResetResponse:
    try:
        result = request_password_reset(db, email=payload.email, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return PasswordResetResponse(sent=result.sent, expiresIn=result.expires_in)


@router.post(
    "/password-reset/confirm",
    response_model=PasswordResetConfirmResponse,
    summary="Set a new password with a reset token",
)
def password_reset_confirm_route(
    payload: PasswordResetConfirmRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PasswordResetConfirmResponse:
    try:
        success = confirm_password_reset(db, token=payload.token, new_password=payload.newPassword, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return PasswordResetConfirmResponse(success=success)


# ------------------------------------------------------------ registration


@router.post("/register", response_model=RegisterResponse, status_code=201, summary="Create an account with email and password")
def register_route(
    payload: RegisterRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> RegisterResponse:
    try:
        result = registration.register_with_email(
            db,
            email=payload.email,
            password=payload.password,
            display_name=payload.displayName,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return RegisterResponse(
        accountId=str(result.account_id),
        accountStatus=result.status,
        verificationExpiresIn=result.verification_expires_in,
    )


@router.post("/email/verify", response_model=EmailVerifyResponse, summary="Confirm an email with the emailed token")
def email_verify_route(
    payload: EmailVerifyRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> EmailVerifyResponse:
    try:
        result = registration.verify_email(db, token=payload.token, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return EmailVerifyResponse(verified=True, alreadyVerified=result.already_verified)


@router.post("/email/resend", response_model=EmailResendResponse, summary="Send a fresh verification link")
def email_resend_route(
    payload: EmailResendRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> EmailResendResponse:
    try:
        result = registration.resend_verification(db, email=payload.email, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return EmailResendResponse(sent=result.sent, expiresIn=result.expires_in)


# ----------------------------------------------------------------- session


@router.get("/session", response_model=SessionResponse, summary="Current session and portal scope")
def session_route(claims: SessionClaims = Depends(get_current_session)) -> SessionResponse:
    return SessionResponse(
        accountId=str(claims.subject),
        role=claims.role,
        expiresAt=claims.expires_at,
        scope=_scope_schema(claims.scope),
    )


@router.post("/session/scope", response_model=LoginResponse, summary="Switch the portal view")
def session_scope_route(
    payload: ScopeSwitchRequest,
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> LoginResponse:
    try:
        result = flows.switch_scope(
            db,
            claims,
            view_all_customers=payload.viewAllCustomers,
            customer_id=payload.customerId,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _login_response(result)


@router.post("/logout", response_model=LogoutResponse, summary="Revoke the current session")
def logout_route(
    payload: Optional[LogoutRequest] = None,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> LogoutResponse:
    all_devices = bool(payload and payload.allDevices)
    try:
        flows.logout(db, claims, all_devices=all_devices, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return LogoutResponse(success=True)


@router.get("/sessions", response_model=DeviceSessionsResponse, summary="List my signed-in devices")
def sessions_route(
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> DeviceSessionsResponse:
    views = session_activity.list_sessions(db, claims)
    return DeviceSessionsResponse(
        sessions=[
            DeviceSessionSchema(
                id=str(view.id),
                channel=view.channel,
                ip=view.ip,
                issuedAt=view.issued_at,
                expiresAt=view.expires_at,
                current=view.is_current,
            )
            for view in views
        ]
    )


@router.post("/sessions/revoke-others", response_model=RevokeOthersResponse, summary="Sign out every other device")
def sessions_revoke_others_route(
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> RevokeOthersResponse:
    try:
        count = session_activity.revoke_other_sessions(db, claims, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return RevokeOthersResponse(revoked=count)


@router.post("/sessions/{sessionId}/revoke", response_model=DeviceSessionSchema, summary="Sign out one device")
def session_revoke_route(
    sessionId: str,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> DeviceSessionSchema:
    try:
        view = session_activity.revoke_session(db, claims, sessionId, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return DeviceSessionSchema(
        id=str(view.id),
        channel=view.channel,
        ip=view.ip,
        issuedAt=view.issued_at,
        expiresAt=view.expires_at,
        current=view.is_current,
    )


def _event_schemas(views: List[AuthEventView]) -> List[AuthEventSchema]:
    return [
        AuthEventSchema(
            eventType=view.event_type,
            channel=view.channel,
            ip=view.ip,
            createdAt=view.created_at,
            details=view.details,
        )
        for view in views
    ]


@router.get("/activity", response_model=AuthEventsResponse, summary="Recent sign-ins and failures")
def activity_route(
    limit: int = Query(20, ge=1, le=session_activity.MAX_EVENT_PAGE),
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> AuthEventsResponse:
    try:
        views = session_activity.login_activity(db, claims.subject, limit=limit)
    except AuthServiceError as exc:
        _raise(exc)
    return AuthEventsResponse(events=_event_schemas(views))


@router.get("/audit-log", response_model=AuthEventsResponse, summary="Security events on my account")
def audit_log_route(
    limit: int = Query(20, ge=1, le=session_activity.MAX_EVENT_PAGE),
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> AuthEventsResponse:
    try:
        views = session_activity.list_auth_events(db, claims.subject, limit=limit)
    except AuthServiceError as exc:
        _raise(exc)
    return AuthEventsResponse(events=_event_schemas(views))


__all__ = ["router", "send_binding_code"]
