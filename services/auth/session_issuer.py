"""Signed bearer sessions carrying a portal-scope snapshot.

Validation never goes back to the database for scope; immediate invalidation goes
through the ``revocation_check`` hook (see ``SessionRevocationStore``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import jwt
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from core.auth.settings import AuthSettings, get_auth_settings
from core.logging import get_logger
from models.account import Account
from models.auth_audit import AccountSession, SessionRevocation
from services.auth.common import ensure_utc, utcnow
from services.auth.scope_resolver import EMPTY_SCOPE, PortalScope
from services.auth_tokens import AuthTokenError

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "session"
MFA_TOKEN_TYPE = "mfa"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    jti: str
    expires_at: datetime
    expires_in: int
    issued_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionClaims:
    subject: uuid.UUID
    scope: PortalScope
    jti: str
    issued_at: datetime
    expires_at: datetime
    token_type: str = SESSION_TOKEN_TYPE
    role: str = "user"
    raw: Optional[Mapping[str, Any]] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


RevocationCheck = Callable[[SessionClaims], bool]


class SessionIssuer:
    def __init__(
        self,
        settings: Optional[AuthSettings] = None,
        *,
        revocation_check: Optional[RevocationCheck] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_auth_settings()
        self.revocation_check = revocation_check
        self.clock = clock

    def _encode(self, payload: Dict[str, Any]) -> str:
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def issue(self, account: Account, scope: PortalScope, ttl: Optional[int] = None) -> IssuedSession:
        ttl_seconds = int(ttl if ttl is not None else self.settings.session_ttl_seconds)
        return self._issue(account, SESSION_TOKEN_TYPE, ttl_seconds, {"scope": scope.to_claims()})

    def issue_mfa_token(self, account: Account) -> IssuedSession:
        """Short-lived bridge between the first factor and the TOTP step."""
        return self._issue(account, MFA_TOKEN_TYPE, self.settings.mfa_token_ttl_seconds, {})

    def _issue(self, account: Account, token_type: str, ttl_seconds: int, extra: Dict[str, Any]) -> IssuedSession:
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        jti = uuid.uuid4().hex
        payload: Dict[str, Any] = {
            "sub": str(account.id),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now.timestamp(),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
            "typ": token_type,
            "role": account.role or "user",
        }
        payload.update(extra)
        return IssuedSession(
            token=self._encode(payload),
            jti=jti,
            expires_at=expires_at,
            expires_in=ttl_seconds,
            issued_at=now,
        )

    def validate(self, token: Optional[str], *, expected_type: str = SESSION_TOKEN_TYPE) -> SessionClaims:
        if not token or token.count(".") != 2:
            raise AuthTokenError("auth.token_malformed", "The session token is malformed.", kind="TokenMalformed")
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                options={"require": ["exp", "iat", "sub", "jti"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthTokenError("auth.token_expired", "The session has expired.", kind="TokenExpired") from exc
        except jwt.InvalidSignatureError as exc:
            raise AuthTokenError(
                "auth.token_signature_invalid",
                "The session token signature is invalid.",
                kind="TokenSignatureInvalid",
            ) from exc
        except jwt.InvalidTokenError as exc:
            raise AuthTokenError("auth.token_malformed", "The session token is malformed.", kind="TokenMalformed") from exc

        if payload.get("typ") != expected_type:
            raise AuthTokenError("auth.token_malformed", "Unexpected token type.", kind="TokenMalformed")
        try:
            subject = uuid.UUID(str(payload["sub"]))
        except ValueError:
            raise AuthTokenError("auth.token_malformed", "The token subject is invalid.", kind="TokenMalformed") from None

        claims = SessionClaims(
            subject=subject,
            scope=PortalScope.from_claims(payload.get("scope"), subject) if expected_type == SESSION_TOKEN_TYPE else EMPTY_SCOPE,
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token_type=expected_type,
            role=str(payload.get("role") or "user"),
            raw=payload,
        )
        if self.revocation_check is not None and self.revocation_check(claims):
            raise AuthTokenError("auth.token_revoked", "The session has been revoked.", kind="TokenRevoked")
        return claims


class SessionRevocationStore:
    """Server-side revocation entries: one token by ``jti`` or every token issued before a cut-off."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    def revoke_token(self, claims: SessionClaims, *, reason: str = "logout") -> None:
        self.revoke_jti(claims.subject, claims.jti, expires_at=claims.expires_at, reason=reason)

    def revoke_jti(self, account_id: uuid.UUID, jti: str, *, expires_at: Optional[datetime], reason: str) -> None:
        already = self.session.execute(select(SessionRevocation.id).where(SessionRevocation.jti == jti)).first()
        if already is None:
            self.session.add(SessionRevocation(account_id=account_id, jti=jti, reason=reason, expires_at=expires_at))
        self.session.execute(
            update(AccountSession)
            .where(AccountSession.jti == jti, AccountSession.revoked_at.is_(None))
            .values(revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    def revoke_all(self, account_id: uuid.UUID, *, reason: str = "logout_all") -> None:
        now = self.clock()
        self.session.add(
            SessionRevocation(
                account_id=account_id,
                not_before=now,
                reason=reason,
                expires_at=now + timedelta(seconds=get_auth_settings().session_ttl_seconds),
            )
        )
        self.session.execute(
            update(AccountSession)
            .where(AccountSession.account_id == account_id, AccountSession.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )

    def is_revoked(self, claims: SessionClaims) -> bool:
        rows = self.session.execute(
            select(SessionRevocation.jti, SessionRevocation.not_before).where(
                SessionRevocation.account_id == claims.subject,
                or_(SessionRevocation.jti == claims.jti, SessionRevocation.not_before.is_not(None)),
            )
        ).all()
        for jti, not_before in rows:
            if jti == claims.jti:
                return True
            if not_before is not None and claims.issued_at <= ensure_utc(not_before):
                return True
        return False

    def purge(self, before: Optional[datetime] = None) -> int:
        cutoff = before or self.clock()
        result = self.session.execute(
            delete(SessionRevocation)
            .where(SessionRevocation.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


__all__ = [
    "IssuedSession",
    "MFA_TOKEN_TYPE",
    "SESSION_TOKEN_TYPE",
    "SessionClaims",
    "SessionIssuer",
    "SessionRevocationStore",
]
