"""TOTP enrolment, second-factor checks and backup-code management for an account."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Literal, Optional

from sqlalchemy import delete, func, select, update

from core.auth.settings import AuthSettings, get_auth_settings
from core.logging import get_logger
from models.account import Account, AccountMfa, MfaBackupCode
from services.auth import secret_codec
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    coerce_uuid,
    enforce_rate_limit,
    record_auth_event,
    utcnow,
)
from services.auth.session_issuer import SessionRevocationStore
from services.field_crypto import FieldCryptoError, decrypt_text, encrypt_text

logger = get_logger(__name__)

SecondFactorMethod = Literal["totp", "backup_code"]


@dataclass(frozen=True)
class MfaSetupResult:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class MfaEnableResult:
    enabled: bool
    backup_codes: List[str]


@dataclass(frozen=True)
class MfaStatus:
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int
    enabled_at: Optional[datetime] = None


@dataclass(frozen=True)
class SecondFactorResult:
    method: SecondFactorMethod
    backup_codes_remaining: Optional[int] = None


def _invalid_code() -> AuthServiceError:
    return AuthServiceError.of("InvalidInput", "The verification code is not valid.", code="auth.mfa_invalid_code")


class MfaService:
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

    def _load(self, account_id) -> Account:
        account = self.session.get(Account, coerce_uuid(account_id, field="accountId"))
        if account is None:
            raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
        return account

    def _read_state(self, account: Account, *, lock: bool = False) -> Optional[AccountMfa]:
        query = select(AccountMfa).where(AccountMfa.account_id == account.id).execution_options(populate_existing=True)
        if lock:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def _state(self, account: Account, *, lock: bool = False) -> AccountMfa:
        state = self._read_state(account, lock=lock)
        if state is None:
            state = AccountMfa(account=account, enabled=False)
            self.session.add(state)
        return state

    def _remaining_codes(self, account_id: uuid.UUID) -> int:
        return int(
            self.session.execute(
                select(func.count())
                .select_from(MfaBackupCode)
                .where(MfaBackupCode.account_id == account_id, MfaBackupCode.used_at.is_(None))
            ).scalar_one()
        )

    def _replace_backup_codes(self, account_id: uuid.UUID, state: AccountMfa, now: datetime) -> List[str]:
        codes = secret_codec.generate_backup_codes(self.settings.backup_code_count)
        self.session.execute(
            delete(MfaBackupCode)
            .where(MfaBackupCode.account_id == account_id)
            .execution_options(synchronize_session=False)
        )
        self.session.add_all(
            [MfaBackupCode(account_id=account_id, code_hash=secret_codec.hash_backup_code(code)) for code in codes]
        )
        state.backup_codes_generated_at = now
        return codes

    def _verify_totp(self, account_id: uuid.UUID, encrypted_secret: Optional[str], code: str) -> bool:
        enforce_rate_limit("mfa.verify", str(account_id))
        if not encrypted_secret:
            return False
        try:
            secret = decrypt_text(encrypted_secret)
        except FieldCryptoError as exc:
            logger.error("MFA secret for account %s cannot be decrypted: %s", account_id, exc)
            raise AuthServiceError.of(
                "Unavailable",
                "Secret storage is not configured.",
                code="auth.crypto_unavailable",
            ) from exc
        return secret_codec.verify_code(secret, code, self.clock())

    # ----------------------------------------------------------------- public

    def status(self, account_id) -> MfaStatus:
        account = self._load(account_id)
        state = self._read_state(account)
        return MfaStatus(
            enabled=bool(state and state.enabled),
            pending_setup=bool(state and state.pending_secret_encrypted and not state.enabled),
            backup_codes_remaining=self._remaining_codes(account.id) if state and state.enabled else 0,
            enabled_at=state.enabled_at if state else None,
        )

    def setup(self, account_id) -> MfaSetupResult:
        """Create a pending secret; nothing is enforced until ``enable`` sees a valid code."""
        with atomic(self.session):
            account = self._load(account_id)
            state = self._state(account, lock=True)
            if state.enabled:
                raise AuthServiceError.of("Conflict", "Two-factor authentication is already enabled.", code="auth.mfa_already_enabled")
            secret = secret_codec.generate_secret()
            state.pending_secret_encrypted = encrypt_text(secret)
            label = account.primary_email
        return MfaSetupResult(
            secret=secret,
            provisioning_uri=secret_codec.provisioning_uri(secret, label, self.settings.totp_issuer),
        )

    def enable(self, account_id, code: str, *, context: Optional[RequestContext] = None) -> MfaEnableResult:
        now = self.clock()
        with atomic(self.session):
            account = self._load(account_id)
            state = self._state(account, lock=True)
            if state.enabled:
                raise AuthServiceError.of("Conflict", "Two-factor authentication is already enabled.", code="auth.mfa_already_enabled")
            if not state.pending_secret_encrypted:
                raise AuthServiceError.of("InvalidInput", "Start the setup first.", code="auth.mfa_setup_required")
            if not self._verify_totp(account.id, state.pending_secret_encrypted, code):
                raise _invalid_code()
            state.secret_encrypted = state.pending_secret_encrypted
            state.pending_secret_encrypted = None
            state.enabled = True
            state.enabled_at = now
            state.disabled_at = None
            codes = self._replace_backup_codes(account.id, state, now)
            record_auth_event(self.session, event_type="mfa.enabled", account_id=account.id, channel="totp", context=context)
        logger.info("MFA enabled for account %s.", account.id)
        return MfaEnableResult(enabled=True, backup_codes=codes)

    def disable(self, account_id, code: str, *, context: Optional[RequestContext] = None) -> bool:
        now = self.clock()
        with atomic(self.session):
            account = self._load(account_id)
            state = self._state(account, lock=True)
            if not state.enabled:
                raise AuthServiceError.of("InvalidInput", "Two-factor authentication is not enabled.", code="auth.mfa_not_enabled")
            if not self._verify_totp(account.id, state.secret_encrypted, code):
                raise _invalid_code()
            state.enabled = False
            state.secret_encrypted = None
            state.pending_secret_encrypted = None
            state.disabled_at = now
            state.backup_codes_generated_at = None
            self.session.execute(
                delete(MfaBackupCode)
                .where(MfaBackupCode.account_id == account.id)
                .execution_options(synchronize_session=False)
            )
            record_auth_event(self.session, event_type="mfa.disabled", account_id=account.id, channel="totp", context=context)
        logger.info("MFA disabled for account %s.", account.id)
        return True

    def regenerate_backup_codes(self, account_id, code: str, *, context: Optional[RequestContext] = None) -> List[str]:
        now = self.clock()
        with atomic(self.session):
            account = self._load(account_id)
            state = self._state(account, lock=True)
            if not state.enabled:
                raise AuthServiceError.of("InvalidInput", "Two-factor authentication is not enabled.", code="auth.mfa_not_enabled")
            if not self._verify_totp(account.id, state.secret_encrypted, code):
                raise _invalid_code()
            codes = self._replace_backup_codes(account.id, state, now)
            record_auth_event(
                self.session,
                event_type="mfa.backup_codes_regenerated",
                account_id=account.id,
                channel="totp",
                context=context,
            )
        return codes

    def verify_second_factor(
        self,
        account_id,
        code: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> SecondFactorResult:
        """Accept a TOTP code, or redeem a backup code exactly once."""
        account = self._load(account_id)
        state = self._read_state(account)
        if state is None or not state.enabled:
            raise AuthServiceError.of("InvalidInput", "Two-factor authentication is not enabled.", code="auth.mfa_not_enabled")
        candidate = (code or "").strip()
        compact = candidate.replace(" ", "")
        if compact.isdigit() and len(compact) == secret_codec.CODE_DIGITS:
            if not self._verify_totp(account.id, state.secret_encrypted, candidate):
                raise _invalid_code()
            return SecondFactorResult(method="totp")

        enforce_rate_limit("mfa.verify", str(account.id))
        if len(secret_codec.normalize_backup_code(candidate)) != 9:
            raise _invalid_code()
        now = self.clock()
        with atomic(self.session):
            result = self.session.execute(
                update(MfaBackupCode)
                .where(
                    MfaBackupCode.account_id == account.id,
                    MfaBackupCode.code_hash == secret_codec.hash_backup_code(candidate),
                    MfaBackupCode.used_at.is_(None),
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            redeemed = result.rowcount == 1
            if redeemed:
                record_auth_event(
                    self.session,
                    event_type="mfa.backup_code_used",
                    account_id=account.id,
                    channel="backup_code",
                    context=context,
                )
        if not redeemed:
            raise _invalid_code()
        remaining = self._remaining_codes(account.id)
        logger.info("Backup code redeemed for account %s (%d left).", account.id, remaining)
        return SecondFactorResult(method="backup_code", backup_codes_remaining=remaining)

    def admin_reset(
        self,
        account_id,
        *,
        actor_id,
        reason: str,
        context: Optional[RequestContext] = None,
    ) -> bool:
        """Turn MFA off for someone who lost their device and sign out every session they hold."""
        actor = coerce_uuid(actor_id, field="actorId")
        now = self.clock()
        with atomic(self.session):
            account = self._load(account_id)
            if account.id == actor:
                raise AuthServiceError.of(
                    "InvalidInput",
                    "Administrators cannot reset their own two-factor authentication.",
                    code="auth.mfa_self_reset",
                )
            state = self._read_state(account, lock=True)
            if state is None or not (state.enabled or state.pending_secret_encrypted):
                raise AuthServiceError.of("InvalidInput", "Two-factor authentication is not enabled.", code="auth.mfa_not_enabled")
            state.enabled = False
            state.secret_encrypted = None
            state.pending_secret_encrypted = None
            state.disabled_at = now
            state.backup_codes_generated_at = None
            self.session.execute(
                delete(MfaBackupCode)
                .where(MfaBackupCode.account_id == account.id)
                .execution_options(synchronize_session=False)
            )
            SessionRevocationStore(self.session, clock=self.clock).revoke_all(account.id, reason="mfa_reset_by_admin")
            record_auth_event(
                self.session,
                event_type="mfa.admin_reset",
                account_id=account.id,
                channel="admin",
                context=context,
                metadata={"actorId": str(actor), "reason": reason},
            )
        logger.warning("MFA reset for account %s by admin %s.", account.id, actor)
        return True


__all__ = [
    "MfaEnableResult",
    "MfaService",
    "MfaSetupResult",
    "MfaStatus",
    "SecondFactorResult",
]
