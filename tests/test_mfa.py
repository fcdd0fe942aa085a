import pytest
from sqlalchemy import select

from models.account import MfaBackupCode
from models.auth_audit import AccountSession, AuthEvent, SessionRevocation
from services.auth import flows, secret_codec
from services.auth import mfa as mfa_module
from services.auth.common import AuthServiceError, utcnow
from services.auth.mfa import MfaService
from services.field_crypto import FieldCryptoError


def _current_code(secret: str) -> str:
    return secret_codec.code_at(secret, utcnow())


def _undecryptable(_value: str) -> str:
    raise FieldCryptoError("AUTH_ENCRYPTION_KEY rotated without re-encrypting")


def _wrong_code(secret: str) -> str:
    now = utcnow().timestamp()
    valid = {secret_codec.code_at(secret, now + offset) for offset in (-60, -30, 0, 30, 60)}
    candidate = 0
    while f"{candidate:06d}" in valid:
        candidate += 1
    return f"{candidate:06d}"


@pytest.fixture()
def enrolled(db_session, make_account):
    account = make_account("mfa@example.com")
    service = MfaService(db_session)
    setup = service.setup(account.id)
    enabled = service.enable(account.id, _current_code(setup.secret))
    return account, setup.secret, enabled.backup_codes


def test_setup_is_pending_until_enabled(db_session, make_account):
    account = make_account()
    service = MfaService(db_session)
    setup = service.setup(account.id)

    assert setup.provisioning_uri.startswith("otpauth://totp/")
    status = service.status(account.id)
    assert status.enabled is False
    assert status.pending_setup is True

    with pytest.raises(AuthServiceError) as excinfo:
        service.enable(account.id, _wrong_code(setup.secret))
    assert excinfo.value.code == "auth.mfa_invalid_code"
    assert service.status(account.id).enabled is False


def test_enable_requires_setup(db_session, make_account):
    account = make_account()
    with pytest.raises(AuthServiceError) as excinfo:
        MfaService(db_session).enable(account.id, "123456")
    assert excinfo.value.code == "auth.mfa_setup_required"


def test_enable_returns_backup_codes(db_session, enrolled):
    account, _secret, codes = enrolled
    status = MfaService(db_session).status(account.id)

    assert status.enabled is True
    assert status.backup_codes_remaining == len(codes) == 10
    stored = db_session.execute(select(MfaBackupCode.code_hash)).scalars().all()
    assert codes[0] not in stored

    with pytest.raises(AuthServiceError) as excinfo:
        MfaService(db_session).setup(account.id)
    assert excinfo.value.code == "auth.mfa_already_enabled"


def test_second_factor_accepts_totp(db_session, enrolled):
    account, secret, _codes = enrolled
    service = MfaService(db_session)
    assert service.verify_second_factor(account.id, _current_code(secret)).method == "totp"
    with pytest.raises(AuthServiceError):
        service.verify_second_factor(account.id, _wrong_code(secret))


def test_backup_code_is_single_use(db_session, enrolled):
    account, _secret, codes = enrolled
    service = MfaService(db_session)

    result = service.verify_second_factor(account.id, codes[0].lower())
    assert result.method == "backup_code"
    assert result.backup_codes_remaining == 9

    with pytest.raises(AuthServiceError) as excinfo:
        service.verify_second_factor(account.id, codes[0])
    assert excinfo.value.code == "auth.mfa_invalid_code"


def test_regenerate_replaces_backup_codes(db_session, enrolled):
    account, secret, old_codes = enrolled
    service = MfaService(db_session)
    new_codes = service.regenerate_backup_codes(account.id, _current_code(secret))

    assert set(new_codes).isdisjoint(old_codes)
    with pytest.raises(AuthServiceError):
        service.verify_second_factor(account.id, old_codes[1])


def test_disable_requires_valid_code(db_session, enrolled):
    account, secret, _codes = enrolled
    service = MfaService(db_session)
    with pytest.raises(AuthServiceError):
        service.disable(account.id, _wrong_code(secret))

    assert service.disable(account.id, _current_code(secret)) is True
    status = service.status(account.id)
    assert status.enabled is False
    assert status.backup_codes_remaining == 0
    assert db_session.execute(select(MfaBackupCode)).first() is None


def test_login_with_mfa_issues_single_use_challenge(db_session, enrolled):
    account, secret, _codes = enrolled
    first = flows.complete_first_factor(db_session, account, channel="password")

    assert first.mfa_required is True
    assert first.session is None
    assert first.mfa_token is not None

    result = flows.complete_mfa_challenge(db_session, first.mfa_token.token, _current_code(secret))
    assert result.session is not None
    assert result.account_id == account.id

    with pytest.raises(AuthServiceError) as excinfo:
        flows.complete_mfa_challenge(db_session, first.mfa_token.token, _current_code(secret))
    assert excinfo.value.kind == "Unauthenticated"
    assert excinfo.value.code == "auth.token_revoked"


def test_session_token_cannot_stand_in_for_mfa_token(db_session, enrolled, auth_headers):
    account, secret, _codes = enrolled
    session_token = auth_headers(account)["Authorization"].split(" ", 1)[1]
    with pytest.raises(AuthServiceError) as excinfo:
        flows.complete_mfa_challenge(db_session, session_token, _current_code(secret))
    assert excinfo.value.status_code == 401


def test_mfa_verification_is_rate_limited(db_session, enrolled):
    account, secret, _codes = enrolled
    service = MfaService(db_session)
    wrong = _wrong_code(secret)
    # enrolment already spent one attempt
    for _ in range(4):
        with pytest.raises(AuthServiceError) as excinfo:
            service.verify_second_factor(account.id, wrong)
        assert excinfo.value.kind == "InvalidInput"

    with pytest.raises(AuthServiceError) as excinfo:
        service.verify_second_factor(account.id, _current_code(secret))
    assert excinfo.value.kind == "RateLimited"


def test_undecryptable_secret_reports_unavailable(db_session, enrolled, monkeypatch):
    account, secret, _codes = enrolled
    monkeypatch.setattr(mfa_module, "decrypt_text", _undecryptable)
    with pytest.raises(AuthServiceError) as excinfo:
        MfaService(db_session).verify_second_factor(account.id, _current_code(secret))
    assert excinfo.value.kind == "Unavailable"
    assert excinfo.value.code == "auth.crypto_unavailable"
    assert excinfo.value.status_code == 503


def test_mfa_challenge_with_undecryptable_secret_keeps_token(db_session, enrolled, monkeypatch):
    account, secret, _codes = enrolled
    first = flows.complete_first_factor(db_session, account, channel="password")
    monkeypatch.setattr(mfa_module, "decrypt_text", _undecryptable)

    with pytest.raises(AuthServiceError) as excinfo:
        flows.complete_mfa_challenge(db_session, first.mfa_token.token, _current_code(secret))
    assert excinfo.value.code == "auth.crypto_unavailable"

    monkeypatch.undo()
    result = flows.complete_mfa_challenge(db_session, first.mfa_token.token, _current_code(secret))
    assert result.session is not None


def test_admin_reset_clears_mfa_and_signs_out(db_session, enrolled, make_account, auth_headers):
    account, _secret, codes = enrolled
    admin = make_account("root@example.com", role="admin")
    auth_headers(account)

    assert MfaService(db_session).admin_reset(account.id, actor_id=admin.id, reason="Lost phone, verified by call") is True

    status = MfaService(db_session).status(account.id)
    assert status.enabled is False
    assert status.pending_setup is False
    assert db_session.execute(select(MfaBackupCode)).first() is None
    assert db_session.execute(select(AccountSession).where(AccountSession.revoked_at.is_(None))).first() is None
    revocation = db_session.execute(select(SessionRevocation).where(SessionRevocation.account_id == account.id)).scalar_one()
    assert revocation.reason == "mfa_reset_by_admin"
    assert revocation.not_before is not None
    event = db_session.execute(select(AuthEvent).where(AuthEvent.event_type == "mfa.admin_reset")).scalar_one()
    assert event.details["actorId"] == str(admin.id)

    first = flows.complete_first_factor(db_session, account, channel="password")
    assert first.mfa_required is False
    with pytest.raises(AuthServiceError):
        MfaService(db_session).verify_second_factor(account.id, codes[0])


def test_admin_reset_refuses_self_and_disabled(db_session, enrolled, make_account):
    account, _secret, _codes = enrolled
    with pytest.raises(AuthServiceError) as excinfo:
        MfaService(db_session).admin_reset(account.id, actor_id=account.id, reason="resetting my own device")
    assert excinfo.value.code == "auth.mfa_self_reset"
    assert MfaService(db_session).status(account.id).enabled is True

    other = make_account("plain@example.com")
    with pytest.raises(AuthServiceError) as excinfo:
        MfaService(db_session).admin_reset(other.id, actor_id=account.id, reason="nothing to reset here")
    assert excinfo.value.code == "auth.mfa_not_enabled"
