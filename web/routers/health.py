"""Readiness of the identity service's dependencies."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from core.auth.settings import get_auth_settings
from database import SessionLocal
from services.auth_rate_limiter import backend_status
from services.field_crypto import FieldCryptoError, decrypt_text, encrypt_text

router = APIRouter(prefix="/health", tags=["Health"])

_CRYPTO_PROBE = "health-probe"


def ping_database() -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)
    finally:
        db.close()


def field_encryption_status() -> Dict[str, Any]:
    """MFA enrolment and inbound binding both need the Fernet key to round-trip."""
    try:
        ok = decrypt_text(encrypt_text(_CRYPTO_PROBE)) == _CRYPTO_PROBE
    except FieldCryptoError as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": ok}


@router.get(
    "/status",
    summary="Identity service runtime status",
    description="Database reachability, rate-limit backend, field encryption and configured OAuth providers.",
)
def read_service_status() -> Dict[str, Any]:
    db_ok, db_error = ping_database()
    database: Dict[str, Any] = {"ok": db_ok}
    if db_error:
        database["error"] = db_error
    providers = get_auth_settings().oauth_providers
    return {
        "status": "ok" if db_ok else "degraded",
        "database": database,
        "rateLimiter": backend_status(),
        "fieldEncryption": field_encryption_status(),
        "oauthProviders": sorted(name for name, config in providers.items() if config.configured),
    }
