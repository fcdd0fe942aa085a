"""Shared FastAPI dependencies."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from models.account import Account
from services.auth.common import AuthServiceError, RequestContext, from_token_error
from services.auth.scope_resolver import PortalScope, authorize
from services.auth.session_issuer import SessionClaims, SessionIssuer, SessionRevocationStore
from services.auth_tokens import AuthTokenError
from web.middleware.auth_context import extract_bearer

logger = get_logger(__name__)


def to_http_exception(exc: AuthServiceError) -> HTTPException:
    detail = {"code": exc.code, "message": str(exc)}
    if exc.extra:
        detail.update(exc.extra)
    return HTTPException(status_code=exc.status_code, detail=detail, headers=exc.headers)


def get_request_context(request: Request) -> RequestContext:
    client_host = request.client.host if request.client else None
    return RequestContext(ip=client_host, user_agent=request.headers.get("user-agent"))


def get_current_session(request: Request, db: Session = Depends(get_db)) -> SessionClaims:
    """Validated session claims, re-checked against the revocation store."""
    claims: Optional[SessionClaims] = getattr(request.state, "session_claims", None)
    if claims is None:
        token = extract_bearer(request.headers.get("authorization"))
        if not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "auth.required", "message": "Sign in to continue."},
            )
        try:
            claims = SessionIssuer().validate(token)
        except AuthTokenError as exc:
            raise to_http_exception(from_token_error(exc)) from exc
    try:
        revoked = SessionRevocationStore(db).is_revoked(claims)
    except SQLAlchemyError as exc:
        logger.warning("Revocation lookup failed for %s: %s", claims.subject, exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "auth.unavailable", "message": "Session check failed. Try again shortly."},
        ) from exc
    if revoked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.token_revoked", "message": "The session has been revoked."},
        )
    return claims


def require_admin(
    claims: SessionClaims = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> SessionClaims:
    """The token's role claim is only a hint; the stored account decides."""
    account = db.get(Account, claims.subject)
    if account is None or account.role != "admin" or not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "auth.forbidden", "message": "Administrator access is required."},
        )
    return claims


def require_scope(
    *,
    mutating: bool = False,
    organization_param: str = "organizationId",
    customer_param: str = "customerId",
    project_param: str = "projectId",
):
    """Dependency factory authorising the path/query targets against the session's portal scope."""

    def _target(request: Request, name: str) -> Optional[str]:
        return request.path_params.get(name) or request.query_params.get(name)

    def _dependency(request: Request, claims: SessionClaims = Depends(get_current_session)) -> PortalScope:
        try:
            authorize(
                claims.scope,
                organization_id=_target(request, organization_param),
                customer_id=_target(request, customer_param),
                project_id=_target(request, project_param),
                mutating=mutating,
            )
        except AuthServiceError as exc:
            raise to_http_exception(exc) from exc
        return claims.scope

    return _dependency


__all__ = [
    "get_current_session",
    "get_request_context",
    "require_admin",
    "require_scope",
    "to_http_exception",
]
