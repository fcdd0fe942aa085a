"""Token errors and single-use magic tokens (password reset) stored as hashes."""

from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.auth.constants import AuthTokenType
from models.auth_audit import AuthToken

TokenErrorKind = Literal["TokenExpired", "TokenMalformed", "TokenSignatureInvalid", "TokenRevoked", "TokenInvalid"]


class AuthTokenError(RuntimeError):
    """Raised while validating session or magic tokens."""

    def __init__(self, code: str, message: str, *, kind: TokenErrorKind = "TokenInvalid"):
        super().__init__(message)
        self.code = code
        self.kind = kind


@dataclass(frozen=True)
class MagicToken:
    """Plain token handed to the user once; only its digest is stored."""

    id: uuid.UUID
    token: str
    token_type: AuthTokenType
    account_id: uuid.UUID
    identifier: str
    expires_at: datetime


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def issue_magic_token(
    session: Session,
    *,
    account_id: uuid.UUID,
    token_type: AuthTokenType,
    identifier: str,
    expires_in: timedelta,
    now: Optional[datetime] = None,
) -> MagicToken:
    token = secrets.token_urlsafe(32)
    expires_at = (now or datetime.now(timezone.utc)) + expires_in
    row = AuthToken(
        id=uuid.uuid4(),
        account_id=account_id,
        token_type=token_type,
        token_hash=_token_digest(token),
        identifier=identifier,
        expires_at=expires_at,
    )
    session.add(row)
    return MagicToken(
        id=row.id,
        token=token,
        token_type=token_type,
        account_id=account_id,
        identifier=identifier,
        expires_at=expires_at,
    )


def consume_magic_token(
    session: Session,
    *,
    token: str,
    token_type: AuthTokenType,
    now: Optional[datetime] = None,
) -> MagicToken:
    """Validate the token and mark it used; the row stays locked until the caller commits."""

    row = session.execute(
        select(AuthToken)
        .where(AuthToken.token_hash == _token_digest(token or ""), AuthToken.token_type == token_type)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise AuthTokenError("auth.token_invalid", "The token is not valid.", kind="TokenInvalid")
    current = now or datetime.now(timezone.utc)
    if row.used_at:
        raise AuthTokenError("auth.token_consumed", "The token has already been used.", kind="TokenInvalid")
    if _as_utc(row.expires_at) < current:
        raise AuthTokenError("auth.token_expired", "The token has expired.", kind="TokenExpired")
    row.used_at = current
    return MagicToken(
        id=row.id,
        token=token,
        token_type=token_type,
        account_id=row.account_id,
        identifier=row.identifier,
        expires_at=_as_utc(row.expires_at),
    )


__all__ = [
    "AuthTokenError",
    "MagicToken",
    "TokenErrorKind",
    "consume_magic_token",
    "issue_magic_token",
]
