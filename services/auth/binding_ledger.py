"""Proof-of-control challenges for identifiers reachable only through a messaging channel.

Lifecycle per challenge: ``issued -> verified | expired | attempts_exhausted``.
Expiry is decided by wall clock at verification time; ``purge_expired`` only reclaims storage.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, select, update

from core.auth.constants import BINDABLE_IDENTIFIER_TYPES, IdentifierType
from core.auth.settings import AuthSettings, get_auth_settings
from core.logging import get_logger, mask_phone
from models.account import Account
from models.identifier import AccountIdentifier, BindingChallenge
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    coerce_uuid,
    enforce_rate_limit,
    ensure_utc,
    normalize_phone,
    record_auth_event,
    utcnow,
)
from services.field_crypto import decrypt_text, encrypt_text

logger = get_logger(__name__)

CODE_LENGTH = 6
_CODE_PATTERN = re.compile(r"^\d{6}$")
_BLOCKED_ACCOUNT_STATUSES = {"suspended", "deactivated"}


@dataclass(frozen=True)
class BindingIssue:
    challenge_id: uuid.UUID
    code: str
    expires_at: datetime
    reused: bool
    identifier_type: str
    identifier_value: str
    channel_number: Optional[str] = None


@dataclass(frozen=True)
class BindingVerification:
    verified: bool
    attempts_remaining: int
    identifier_id: Optional[int] = None


class BindingLedger:
    def __init__(
        self,
        session,
        *,
        settings: Optional[AuthSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings or get_auth_settings()
        self.clock = clock

    # ------------------------------------------------------------------ issue

    def request_binding(
        self,
        account_id,
        identifier_type: IdentifierType,
        value: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> BindingIssue:
        """Issue a challenge, or hand back the still-valid one for the same (account, value)."""
        if identifier_type not in BINDABLE_IDENTIFIER_TYPES:
            raise AuthServiceError.of(
                "InvalidInput",
                f"Identifier type '{identifier_type}' cannot be bound through a challenge.",
                code="auth.invalid_identifier_type",
            )
        account_uuid = coerce_uuid(account_id, field="accountId")
        normalized = normalize_phone(value)
        enforce_rate_limit("binding.request.account", str(account_uuid))
        enforce_rate_limit("binding.request.value", normalized)

        now = self.clock()
        with atomic(self.session):
            self._load_bindable_account(account_uuid)
            self._ensure_not_verified_elsewhere(account_uuid, identifier_type, normalized)

            pending = self.session.execute(
                select(BindingChallenge)
                .where(
                    BindingChallenge.account_id == account_uuid,
                    BindingChallenge.identifier_type == identifier_type,
                    BindingChallenge.identifier_value == normalized,
                    BindingChallenge.status == "issued",
                )
                .order_by(BindingChallenge.created_at.desc())
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().all()

            reusable: Optional[BindingChallenge] = None
            for challenge in pending:
                live = ensure_utc(challenge.expires_at) > now and challenge.attempts < challenge.max_attempts
                if live and reusable is None:
                    reusable = challenge
                elif not live:
                    challenge.status = "expired"
            # stale rows must leave 'issued' before a replacement is inserted
            self.session.flush()

            if reusable is not None:
                issue = BindingIssue(
                    challenge_id=reusable.id,
                    code=decrypt_text(reusable.code_encrypted),
                    expires_at=ensure_utc(reusable.expires_at),
                    reused=True,
                    identifier_type=identifier_type,
                    identifier_value=normalized,
                    channel_number=self.settings.binding_channel_number,
                )
            else:
                issue = self._mint(account_uuid, identifier_type, normalized, now)
                record_auth_event(
                    self.session,
                    event_type="binding.requested",
                    account_id=account_uuid,
                    channel=identifier_type,
                    context=context,
                    metadata={"challengeId": str(issue.challenge_id), "identifier": mask_phone(normalized)},
                )

        logger.info(
            "Binding challenge %s for account %s (%s, reused=%s).",
            issue.challenge_id,
            account_uuid,
            mask_phone(normalized),
            issue.reused,
        )
        return issue

    def _mint(self, account_id: uuid.UUID, identifier_type: str, value: str, now: datetime) -> BindingIssue:
        challenge_id = uuid.uuid4()
        code = f"{secrets.randbelow(900000) + 100000}"
        expires_at = now + timedelta(seconds=self.settings.binding_code_ttl_seconds)
        self.session.add(
            BindingChallenge(
                id=challenge_id,
                account_id=account_id,
                identifier_type=identifier_type,
                identifier_value=value,
                code_hash=self._hash_code(challenge_id, code),
                code_encrypted=encrypt_text(code),
                status="issued",
                attempts=0,
                max_attempts=self.settings.binding_max_attempts,
                expires_at=expires_at,
                created_at=now,
            )
        )
        return BindingIssue(
            challenge_id=challenge_id,
            code=code,
            expires_at=expires_at,
            reused=False,
            identifier_type=identifier_type,
            identifier_value=value,
            channel_number=self.settings.binding_channel_number,
        )

    # ----------------------------------------------------------------- verify

    def verify_binding(
        self,
        account_id,
        challenge_id,
        code: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> BindingVerification:
        """Atomically check a code and move the challenge along its state machine."""
        submitted = (code or "").strip()
        if not _CODE_PATTERN.match(submitted):
            raise AuthServiceError.of("InvalidInput", "Binding codes are 6 digits.", code="auth.invalid_code")
        account_uuid = coerce_uuid(account_id, field="accountId")
        challenge_uuid = coerce_uuid(challenge_id, field="challengeId")
        enforce_rate_limit("binding.verify", str(challenge_uuid))

        now = self.clock()
        expired = False
        with atomic(self.session):
            challenge = self.session.execute(
                select(BindingChallenge)
                .where(BindingChallenge.id == challenge_uuid)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if challenge is None or challenge.account_id != account_uuid or challenge.status == "verified":
                raise AuthServiceError.of("NotFound", "No active binding challenge matches.", code="auth.challenge_not_found")
            if challenge.status == "expired":
                raise _expired_error()
            if challenge.status == "attempts_exhausted" or challenge.attempts >= challenge.max_attempts:
                raise _exhausted_error()

            observed_attempts = challenge.attempts
            if ensure_utc(challenge.expires_at) <= now:
                self._transition(challenge.id, observed_attempts, status="expired")
                expired = True
                result = BindingVerification(verified=False, attempts_remaining=0)
            elif not hmac.compare_digest(challenge.code_hash, self._hash_code(challenge.id, submitted)):
                attempts = observed_attempts + 1
                status = "attempts_exhausted" if attempts >= challenge.max_attempts else "issued"
                self._transition(challenge.id, observed_attempts, attempts=attempts, status=status)
                record_auth_event(
                    self.session,
                    event_type="binding.failed",
                    account_id=account_uuid,
                    channel=challenge.identifier_type,
                    context=context,
                    metadata={"challengeId": str(challenge.id), "attempts": attempts, "status": status},
                )
                result = BindingVerification(verified=False, attempts_remaining=max(challenge.max_attempts - attempts, 0))
            else:
                self._ensure_not_verified_elsewhere(account_uuid, challenge.identifier_type, challenge.identifier_value)
                self._transition(challenge.id, observed_attempts, status="verified", consumed_at=now)
                identifier = self._mark_identifier_verified(account_uuid, challenge.identifier_type, challenge.identifier_value, now)
                record_auth_event(
                    self.session,
                    event_type="binding.verified",
                    account_id=account_uuid,
                    channel=challenge.identifier_type,
                    context=context,
                    metadata={"challengeId": str(challenge.id), "identifier": mask_phone(challenge.identifier_value)},
                )
                self.session.flush()
                result = BindingVerification(
                    verified=True,
                    attempts_remaining=max(challenge.max_attempts - observed_attempts, 0),
                    identifier_id=identifier.id,
                )

        if expired:
            raise _expired_error()
        if result.verified:
            logger.info("Binding challenge %s verified for account %s.", challenge_uuid, account_uuid)
        return result

    def purge_expired(self, before: Optional[datetime] = None) -> int:
        """Delete challenges whose validity ended before ``before`` (default: now)."""
        cutoff = before or self.clock()
        with atomic(self.session):
            result = self.session.execute(
                delete(BindingChallenge)
                .where(BindingChallenge.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("Purged %d binding challenges.", removed)
        return removed

    # ---------------------------------------------------------------- helpers

    def _hash_code(self, challenge_id: uuid.UUID, code: str) -> str:
        message = f"{challenge_id}:{code}".encode("utf-8")
        return hmac.new(self.settings.state_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def _transition(self, challenge_id: uuid.UUID, observed_attempts: int, **values) -> None:
        """Compare-and-swap on (status='issued', attempts) so parallel verifies cannot both win."""
        result = self.session.execute(
            update(BindingChallenge)
            .where(
                BindingChallenge.id == challenge_id,
                BindingChallenge.status == "issued",
                BindingChallenge.attempts == observed_attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AuthServiceError.of(
                "Conflict",
                "The challenge was updated by another request. Try again.",
                code="auth.challenge_busy",
            )

    def _load_bindable_account(self, account_id: uuid.UUID) -> Account:
        account = self.session.get(Account, account_id)
        if account is None:
            raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
        if account.status in _BLOCKED_ACCOUNT_STATUSES:
            raise AuthServiceError.of("Forbidden", "This account cannot bind new identifiers.")
        return account

    def _ensure_not_verified_elsewhere(self, account_id: uuid.UUID, identifier_type: str, value: str) -> None:
        owner = self.session.execute(
            select(AccountIdentifier)
            .where(
                AccountIdentifier.identifier_type == identifier_type,
                AccountIdentifier.value == value,
                AccountIdentifier.status == "verified",
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if owner is None:
            return
        if owner.account_id != account_id:
            raise AuthServiceError.of(
                "Conflict",
                "This identifier is already verified on another account.",
                code="auth.identifier_conflict",
            )
        raise AuthServiceError.of(
            "Conflict",
            "This identifier is already verified on your account.",
            code="auth.identifier_already_verified",
        )

    def _mark_identifier_verified(
        self,
        account_id: uuid.UUID,
        identifier_type: str,
        value: str,
        now: datetime,
    ) -> AccountIdentifier:
        identifier = self.session.execute(
            select(AccountIdentifier).where(
                AccountIdentifier.account_id == account_id,
                AccountIdentifier.identifier_type == identifier_type,
                AccountIdentifier.value == value,
                AccountIdentifier.status == "pending",
            )
        ).scalars().first()
        if identifier is None:
            identifier = AccountIdentifier(account_id=account_id, identifier_type=identifier_type, value=value)
            self.session.add(identifier)
        identifier.status = "verified"
        identifier.verified_at = now
        identifier.verified_by = account_id
        return identifier


def _expired_error() -> AuthServiceError:
    return AuthServiceError.of("Expired", "The binding code has expired. Request a new one.", code="auth.challenge_expired")


def _exhausted_error() -> AuthServiceError:
    return AuthServiceError.of(
        "AttemptsExhausted",
        "Too many wrong codes. Request a new binding code.",
        code="auth.challenge_attempts_exhausted",
    )


def request_binding(session, account_id, identifier_type: IdentifierType, value: str, **kwargs) -> BindingIssue:
    return BindingLedger(session).request_binding(account_id, identifier_type, value, **kwargs)


def verify_binding(session, account_id, challenge_id, code: str, **kwargs) -> BindingVerification:
    return BindingLedger(session).verify_binding(account_id, challenge_id, code, **kwargs)


__all__ = [
    "BindingIssue",
    "BindingLedger",
    "BindingVerification",
    "CODE_LENGTH",
    "request_binding",
    "verify_binding",
]
