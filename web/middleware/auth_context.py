"""Attach validated session claims from Authorization headers."""

from __future__ import annotations

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.logging import get_logger
from services.auth.common import from_token_error
from services.auth.session_issuer import SessionIssuer
from services.auth_tokens import AuthTokenError

logger = get_logger(__name__)

_BYPASS_PREFIXES = (
    "/api/v1/auth",
    "/docs",
    "/openapi",
    "/health",
)


def _should_bypass(path: str) -> bool:
    path = path or ""
    return any(path.startswith(prefix) for prefix in _BYPASS_PREFIXES)


def extract_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    value = header_value.strip()
    if not value:
        return None
    if value.lower().startswith("bearer "):
        token = value[7:].strip()
        return token or None
    return None


async def auth_context_middleware(request: Request, call_next):
    """Signature and expiry only; revocation is checked by ``get_current_session``."""
    path = request.url.path if request.url else ""
    if request.method == "OPTIONS" or _should_bypass(path):
        return await call_next(request)

    token = extract_bearer(request.headers.get("authorization"))
    if not token:
        return await call_next(request)

    try:
        claims = SessionIssuer().validate(token)
    except AuthTokenError as exc:
        error = from_token_error(exc)
        detail = {"code": error.code, "message": error.message, **error.extra}
        return JSONResponse(status_code=error.status_code, content={"detail": detail})

    request.state.session_claims = claims
    return await call_next(request)


__all__ = ["auth_context_middleware", "extract_bearer"]
