from datetime import timedelta
from typing import Dict, List

import pytest
from sqlalchemy import select

from models.account import Account
from models.auth_audit import AuthEvent
from models.identifier import AccountIdentifier
from services.auth import registration
from services.auth.common import AuthServiceError, RequestContext, utcnow
from services.auth.identity_resolver import IdentityResolver
from services.auth.providers import ExternalIdentity

PASSWORD = "Sturdy-Passw0rd!"
CONTEXT = RequestContext(ip="203.0.113.9", user_agent="pytest")


@pytest.fixture()
def sent_links(monkeypatch: pytest.MonkeyPatch) -> List[Dict[str, str]]:
    sent: List[Dict[str, str]] = []
    monkeypatch.setattr(registration, "send_verification_email", lambda **kwargs: sent.append(kwargs))
    return sent


def _email_rows(db_session, email: str) -> List[AccountIdentifier]:
    return db_session.execute(
        select(AccountIdentifier)
        .where(AccountIdentifier.identifier_type == "email", AccountIdentifier.value == email)
        .execution_options(populate_existing=True)
    ).scalars().all()


def test_register_then_verify_email(db_session, sent_links):
    result = registration.register_with_email(
        db_session, email=" New.User@Example.com ", password=PASSWORD, context=CONTEXT
    )

    assert result.status == "pending_approval"
    assert result.email == "new.user@example.com"
    account = db_session.get(Account, result.account_id)
    assert account.signup_channel == "email"
    assert account.display_name == "new.user"
    assert account.password_hash and PASSWORD not in account.password_hash
    assert account.email_verified_at is None
    assert [row.status for row in _email_rows(db_session, "new.user@example.com")] == ["pending"]
    assert [entry["email"] for entry in sent_links] == ["new.user@example.com"]

    verified = registration.verify_email(db_session, token=sent_links[0]["token"], context=CONTEXT)
    assert verified.account_id == account.id
    assert verified.already_verified is False
    assert [row.status for row in _email_rows(db_session, "new.user@example.com")] == ["verified"]
    db_session.refresh(account)
    assert account.email_verified_at is not None
    assert account.status == "pending_approval"

    with pytest.raises(AuthServiceError) as excinfo:
        registration.verify_email(db_session, token=sent_links[0]["token"])
    assert excinfo.value.code == "auth.token_consumed"


def test_register_refuses_taken_email(db_session, make_account, sent_links):
    make_account("taken@example.com")
    with pytest.raises(AuthServiceError) as excinfo:
        registration.register_with_email(db_session, email="TAKEN@example.com", password=PASSWORD, context=CONTEXT)
    assert excinfo.value.kind == "Conflict"
    assert excinfo.value.code == "auth.email_conflict"
    assert sent_links == []


def test_register_refuses_email_verified_as_secondary(db_session, make_account, sent_links):
    owner = make_account("owner@example.com")
    db_session.add(
        AccountIdentifier(account_id=owner.id, identifier_type="email", value="alias@example.com", status="verified")
    )
    db_session.commit()
    with pytest.raises(AuthServiceError) as excinfo:
        registration.register_with_email(db_session, email="alias@example.com", password=PASSWORD, context=CONTEXT)
    assert excinfo.value.code == "auth.email_conflict"


def test_register_rejects_weak_password(db_session, sent_links):
    with pytest.raises(AuthServiceError) as excinfo:
        registration.register_with_email(db_session, email="weak@example.com", password="password", context=CONTEXT)
    assert excinfo.value.code == "auth.invalid_password"
    assert db_session.execute(select(Account)).first() is None
    assert sent_links == []


def test_oauth_provisioned_email_can_be_verified_by_link(db_session, sent_links):
    identity = ExternalIdentity(
        provider="google", subject_id="g-9", email="oauth@example.com", display_name="OAuth", email_verified=False
    )
    account = IdentityResolver(db_session).resolve_or_provision(identity).account

    result = registration.resend_verification(db_session, email="oauth@example.com", context=CONTEXT)
    assert result.sent is True
    assert len(sent_links) == 1

    registration.verify_email(db_session, token=sent_links[0]["token"], context=CONTEXT)
    rows = _email_rows(db_session, "oauth@example.com")
    assert [(row.account_id, row.status) for row in rows] == [(account.id, "verified")]
    event = db_session.execute(select(AuthEvent).where(AuthEvent.event_type == "email.verified")).scalar_one()
    assert event.account_id == account.id


def test_resend_reveals_nothing_for_unknown_or_verified(db_session, make_account, sent_links):
    make_account("done@example.com")
    assert registration.resend_verification(db_session, email="ghost@example.com").sent is True
    assert registration.resend_verification(db_session, email="done@example.com").sent is True
    assert sent_links == []


def test_resend_is_rate_limited_per_email(db_session, sent_links):
    registration.register_with_email(db_session, email="busy@example.com", password=PASSWORD, context=CONTEXT)
    for _ in range(3):
        registration.resend_verification(db_session, email="busy@example.com")
    with pytest.raises(AuthServiceError) as excinfo:
        registration.resend_verification(db_session, email="busy@example.com")
    assert excinfo.value.kind == "RateLimited"


def test_expired_verification_link(db_session, sent_links, monkeypatch):
    registration.register_with_email(db_session, email="late@example.com", password=PASSWORD, context=CONTEXT)
    later = utcnow() + timedelta(days=2)
    monkeypatch.setattr(registration, "utcnow", lambda: later)

    with pytest.raises(AuthServiceError) as excinfo:
        registration.verify_email(db_session, token=sent_links[0]["token"])
    assert excinfo.value.kind == "Expired"
    assert [row.status for row in _email_rows(db_session, "late@example.com")] == ["pending"]


def test_verify_refuses_email_claimed_by_another_account(db_session, make_account, sent_links):
    identity = ExternalIdentity(
        provider="github", subject_id="77", email="shared@example.com", display_name=None, email_verified=False
    )
    IdentityResolver(db_session).resolve_or_provision(identity)
    registration.resend_verification(db_session, email="shared@example.com")

    other = make_account("other@example.com")
    db_session.add(
        AccountIdentifier(account_id=other.id, identifier_type="email", value="shared@example.com", status="verified")
    )
    db_session.commit()

    with pytest.raises(AuthServiceError) as excinfo:
        registration.verify_email(db_session, token=sent_links[0]["token"])
    assert excinfo.value.code == "auth.identifier_conflict"
