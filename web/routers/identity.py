"""Identifier self-service and administrator account actions."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from models.account import Account
from schemas.api.auth import AuthEventSchema, AuthEventsResponse
from schemas.api.identity import (
    AccountApproveRequest,
    AccountSummarySchema,
    AccountSuspendRequest,
    IdentifierListResponse,
    IdentifierRevokeRequest,
    IdentifierSchema,
    InboundResolutionResponse,
    MfaResetRequest,
    MfaResetResponse,
    PrimaryEmailChangeRequest,
)
from services.auth import admin as identity_admin
from services.auth import session_activity
from services.auth.admin import IdentifierView
from services.auth.common import AuthServiceError, RequestContext
from services.auth.mfa import MfaService
from services.auth.session_issuer import SessionClaims
from web.deps import get_current_session, get_request_context, require_admin, to_http_exception

router = APIRouter(prefix="/identity", tags=["Identity"])


def _raise(exc: AuthServiceError) -> None:
    raise to_http_exception(exc) from exc


def _identifier_schema(view: IdentifierView) -> IdentifierSchema:
    return IdentifierSchema(
        id=view.id,
        identifierType=view.identifier_type,
        maskedValue=view.masked_value,
        status=view.status,
        isPrimary=view.is_primary,
        verifiedAt=view.verified_at,
        revokedAt=view.revoked_at,
    )


def _account_schema(account: Account) -> AccountSummarySchema:
    return AccountSummarySchema(
        id=str(account.id),
        primaryEmail=account.primary_email,
        emailVerified=account.email_verified_at is not None,
        status=account.status,
        accountType=account.account_type,
        role=account.role,
        approvedAt=account.approved_at,
    )


@router.get("/identifiers", response_model=IdentifierListResponse, summary="List my identifiers (masked)")
def list_identifiers_route(
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> IdentifierListResponse:
    try:
        views = identity_admin.list_identifiers(db, claims.subject)
    except AuthServiceError as exc:
        _raise(exc)
    return IdentifierListResponse(identifiers=[_identifier_schema(view) for view in views])


@router.post("/identifiers/{identifierId}/revoke", response_model=IdentifierSchema, summary="Revoke one of my identifiers")
def revoke_identifier_route(
    identifierId: int,
    payload: Optional[IdentifierRevokeRequest] = None,
    claims: SessionClaims = Depends(get_current_session),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> IdentifierSchema:
    try:
        view = identity_admin.revoke_identifier(
            db,
            account_id=claims.subject,
            identifier_id=identifierId,
            actor_id=claims.subject,
            reason=payload.reason if payload else None,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _identifier_schema(view)


# ------------------------------------------------------------------- admin


@router.post(
    "/admin/identifiers/{identifierId}/verify",
    response_model=IdentifierSchema,
    summary="Mark an identifier verified (admin)",
)
def admin_verify_identifier_route(
    identifierId: int,
    admin: SessionClaims = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> IdentifierSchema:
    try:
        view = identity_admin.admin_verify_identifier(db, identifier_id=identifierId, actor_id=admin.subject, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return _identifier_schema(view)


@router.post(
    "/admin/identifiers/{identifierId}/revoke",
    response_model=IdentifierSchema,
    summary="Revoke any identifier (admin)",
)
def admin_revoke_identifier_route(
    identifierId: int,
    payload: Optional[IdentifierRevokeRequest] = None,
    admin: SessionClaims = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> IdentifierSchema:
    try:
        view = identity_admin.revoke_identifier(
            db,
            account_id=admin.subject,
            identifier_id=identifierId,
            actor_id=admin.subject,
            reason=payload.reason if payload else None,
            as_admin=True,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _identifier_schema(view)


@router.post(
    "/admin/accounts/{accountId}/email",
    response_model=AccountSummarySchema,
    summary="Change an account's primary email (resets verification)",
)
def admin_change_email_route(
    accountId: str,
    payload: PrimaryEmailChangeRequest,
    admin: SessionClaims = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> AccountSummarySchema:
    try:
        account = identity_admin.change_primary_email(
            db,
            account_id=accountId,
            new_email=payload.email,
            actor_id=admin.subject,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _account_schema(account)


@router.post(
    "/admin/accounts/{accountId}/approve",
    response_model=AccountSummarySchema,
    summary="Assign membership and activate a pending account",
)
def admin_approve_account_route(
    accountId: str,
    payload: AccountApproveRequest,
    admin: SessionClaims = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> AccountSummarySchema:
    try:
        account = identity_admin.approve_account(
            db,
            account_id=accountId,
            actor_id=admin.subject,
            account_type=payload.accountType,
            organization_id=payload.organizationId,
            customer_id=payload.customerId,
            role=payload.role,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _account_schema(account)


@router.post(
    "/admin/accounts/{accountId}/suspend",
    response_model=AccountSummarySchema,
    summary="Suspend an account and revoke its sessions",
)
def admin_suspend_account_route(
    accountId: str,
    payload: Optional[AccountSuspendRequest] = None,
    admin: SessionClaims = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> AccountSummarySchema:
    try:
        account = identity_admin.suspend_account(
            db,
            account_id=accountId,
            actor_id=admin.subject,
            reason=payload.reason if payload else None,
            context=context,
        )
    except AuthServiceError as exc:
        _raise(exc)
    return _account_schema(account)


@router.post(
    "/admin/accounts/{accountId}/mfa/reset",
    response_model=MfaResetResponse,
    summary="Clear two-factor for a locked-out user and sign them out",
)
def admin_mfa_reset_route(
    accountId: str,
    payload: MfaResetRequest,
    admin: SessionClaims = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MfaResetResponse:
    try:
        reset = MfaService(db).admin_reset(accountId, actor_id=admin.subject, reason=payload.reason, context=context)
    except AuthServiceError as exc:
        _raise(exc)
    return MfaResetResponse(reset=reset)


@router.get(
    "/admin/accounts/{accountId}/audit-log",
    response_model=AuthEventsResponse,
    summary="Security events on an account (admin)",
)
def admin_audit_log_route(
    accountId: str,
    limit: int = Query(50, ge=1, le=session_activity.MAX_EVENT_PAGE),
    admin: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AuthEventsResponse:
    try:
        views = session_activity.account_audit_log(db, accountId, limit=limit)
    except AuthServiceError as exc:
        _raise(exc)
    return AuthEventsResponse(
        events=[
            AuthEventSchema(
                eventType=view.event_type,
                channel=view.channel,
                ip=view.ip,
                createdAt=view.created_at,
                details=view.details,
            )
            for view in views
        ]
    )


@router.get("/admin/resolve", response_model=InboundResolutionResponse, summary="Resolve an inbound identifier")
def admin_resolve_route(
    type: str = Query(..., alias="type"),
    value: str = Query(...),
    admin: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
) -> InboundResolutionResponse:
    try:
        resolution = identity_admin.resolve_inbound(db, type, value)
    except AuthServiceError as exc:
        _raise(exc)
    return InboundResolutionResponse(
        status=resolution.status,
        identifierType=resolution.identifier_type,
        maskedValue=resolution.masked_value,
        accountId=str(resolution.account_id) if resolution.account_id else None,
        identifierId=resolution.identifier_id,
    )


__all__ = ["router"]
