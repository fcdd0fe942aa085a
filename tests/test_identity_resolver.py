import pytest
from sqlalchemy import select

from models.account import Account
from models.identifier import AccountIdentifier
from services.auth import admin as identity_admin
from services.auth.binding_ledger import BindingLedger
from services.auth.common import AuthServiceError
from services.auth.identity_resolver import IdentityResolver, oauth_subject_value
from services.auth.oauth_broker import load_oauth_settings
from services.auth.providers import ExternalIdentity, MicrosoftProvider
from services.auth.scope_resolver import ScopeResolver


def _identity(subject="sub-1", email="person@example.com", verified=True, provider="google") -> ExternalIdentity:
    return ExternalIdentity(
        provider=provider,
        subject_id=subject,
        email=email,
        display_name="Person",
        email_verified=verified,
    )


def test_unknown_identity_provisions_pending_account(db_session):
    resolved = IdentityResolver(db_session).resolve_or_provision(_identity())

    assert resolved.created is True
    account = resolved.account
    assert account.status == "pending_approval"
    assert account.primary_email == "person@example.com"
    rows = db_session.execute(select(AccountIdentifier).where(AccountIdentifier.account_id == account.id)).scalars().all()
    assert {(row.identifier_type, row.status) for row in rows} == {("oauth_subject", "verified"), ("email", "pending")}


def test_same_subject_resolves_to_same_account(db_session):
    resolver = IdentityResolver(db_session)
    first = resolver.resolve_or_provision(_identity())
    second = resolver.resolve_or_provision(_identity(email="renamed@example.com"))

    assert second.created is False
    assert second.account.id == first.account.id
    assert len(db_session.execute(select(Account)).scalars().all()) == 1


def test_existing_email_is_linked(db_session, make_account):
    account = make_account("person@example.com")
    resolved = IdentityResolver(db_session).resolve_or_provision(_identity(provider="github", subject="42"))

    assert resolved.account.id == account.id
    assert resolved.linked is True
    subject = db_session.execute(
        select(AccountIdentifier).where(AccountIdentifier.value == oauth_subject_value("github", "42"))
    ).scalar_one()
    assert subject.account_id == account.id
    assert subject.status == "verified"


def test_unverified_provider_email_is_not_linked(db_session, make_account):
    make_account("person@example.com")
    with pytest.raises(AuthServiceError) as excinfo:
        IdentityResolver(db_session).resolve_or_provision(_identity(verified=False))
    assert excinfo.value.code == "auth.provider_email_unverified"
    assert db_session.execute(select(AccountIdentifier).where(AccountIdentifier.identifier_type == "oauth_subject")).first() is None


def test_resolve_by_identifier(db_session, make_account):
    account = make_account("person@example.com")
    resolver = IdentityResolver(db_session)
    assert resolver.resolve("email", " Person@Example.com ").id == account.id
    assert resolver.resolve("phone", "+15550000000") is None
    with pytest.raises(AuthServiceError):
        resolver.resolve("fax", "123")


def test_lookup_inbound_tracks_lifecycle(db_session, make_account):
    account = make_account()
    resolver = IdentityResolver(db_session)
    phone = "+447700900123"

    assert resolver.lookup_inbound("whatsapp_phone", phone).status == "unknown"

    ledger = BindingLedger(db_session)
    issue = ledger.request_binding(account.id, "whatsapp_phone", phone)
    result = ledger.verify_binding(account.id, issue.challenge_id, issue.code)
    verified = resolver.lookup_inbound("whatsapp_phone", "+44 7700 900123")
    assert verified.status == "verified"
    assert verified.account_id == account.id
    assert phone not in verified.masked_value
    assert verified.masked_value.endswith("0123")

    identity_admin.revoke_identifier(db_session, account_id=account.id, identifier_id=result.identifier_id, actor_id=account.id)
    revoked = resolver.lookup_inbound("whatsapp_phone", phone)
    assert revoked.status == "revoked"
    assert resolver.resolve("whatsapp_phone", phone) is None


def _subject_row(db_session, provider="google", subject="sub-1", status="verified") -> AccountIdentifier:
    return db_session.execute(
        select(AccountIdentifier).where(
            AccountIdentifier.value == oauth_subject_value(provider, subject),
            AccountIdentifier.status == status,
        )
    ).scalar_one()


def test_revoked_subject_does_not_relink_by_email(db_session, make_account, add_membership, tenancy):
    account = make_account("person@example.com")
    add_membership(account, customer=tenancy.acme)
    admin = make_account("root@example.com", role="admin")
    resolver = IdentityResolver(db_session)
    assert resolver.resolve_or_provision(_identity()).linked is True

    row = _subject_row(db_session)
    identity_admin.revoke_identifier(
        db_session, account_id=admin.id, identifier_id=row.id, actor_id=admin.id, as_admin=True
    )

    with pytest.raises(AuthServiceError) as excinfo:
        resolver.resolve_or_provision(_identity())
    assert excinfo.value.code == "auth.identifier_revoked"
    assert excinfo.value.status_code == 403
    verified = db_session.execute(
        select(AccountIdentifier).where(
            AccountIdentifier.identifier_type == "oauth_subject",
            AccountIdentifier.status == "verified",
        )
    ).first()
    assert verified is None
    scope = ScopeResolver(db_session).resolve_for_identifier("oauth_subject", oauth_subject_value("google", "sub-1"))
    assert scope.is_empty


def test_explicit_link_reclaims_revoked_subject(db_session, make_account):
    account = make_account("person@example.com")
    resolver = IdentityResolver(db_session)
    resolver.resolve_or_provision(_identity())
    row = _subject_row(db_session)
    identity_admin.revoke_identifier(db_session, account_id=account.id, identifier_id=row.id, actor_id=account.id)

    linked = resolver.link(account.id, _identity())
    assert linked.linked is True
    assert linked.account.id == account.id
    assert resolver.resolve_or_provision(_identity()).account.id == account.id
    assert _subject_row(db_session).account_id == account.id

    again = resolver.link(account.id, _identity())
    assert again.linked is False


def test_link_refuses_subject_owned_elsewhere(db_session, make_account):
    owner = make_account("owner@example.com")
    other = make_account("other@example.com")
    resolver = IdentityResolver(db_session)
    resolver.link(owner.id, _identity(subject="shared"))

    with pytest.raises(AuthServiceError) as excinfo:
        resolver.link(other.id, _identity(subject="shared"))
    assert excinfo.value.code == "auth.identifier_conflict"
    assert _subject_row(db_session, subject="shared").account_id == owner.id


def test_unknown_verification_is_not_linked(db_session, make_account):
    make_account("ceo@example.com")
    identity = MicrosoftProvider(load_oauth_settings().providers["microsoft"]).parse_userinfo(
        {"id": "tenant-user", "mail": "ceo@example.com", "displayName": "Not The CEO"}
    )
    assert identity.email_verified is False

    with pytest.raises(AuthServiceError) as excinfo:
        IdentityResolver(db_session).resolve_or_provision(identity)
    assert excinfo.value.code == "auth.provider_email_unverified"
    assert db_session.execute(select(AccountIdentifier).where(AccountIdentifier.identifier_type == "oauth_subject")).first() is None


def test_microsoft_edov_claim_vouches_for_email(db_session, make_account):
    account = make_account("ceo@example.com")
    identity = MicrosoftProvider(load_oauth_settings().providers["microsoft"]).parse_userinfo(
        {"id": "real-ceo", "mail": "ceo@example.com", "xms_edov": True}
    )
    resolved = IdentityResolver(db_session).resolve_or_provision(identity)
    assert resolved.linked is True
    assert resolved.account.id == account.id


def test_unlink_provider_revokes_subject(db_session, make_account):
    account = make_account("person@example.com", password="Sturdy-Passw0rd!")
    resolver = IdentityResolver(db_session)
    resolver.resolve_or_provision(_identity())
    resolver.resolve_or_provision(_identity(provider="github", subject="42"))
    assert {view.provider for view in identity_admin.list_linked_accounts(db_session, account.id)} == {"google", "github"}

    assert identity_admin.unlink_provider(db_session, account_id=account.id, provider="google") == 1

    linked = identity_admin.list_linked_accounts(db_session, account.id)
    assert [view.provider for view in linked] == ["github"]
    assert _subject_row(db_session, status="revoked").revoked_reason == "unlinked"
    with pytest.raises(AuthServiceError) as excinfo:
        resolver.resolve_or_provision(_identity())
    assert excinfo.value.code == "auth.identifier_revoked"


def test_unlink_keeps_last_sign_in_method(db_session):
    resolved = IdentityResolver(db_session).resolve_or_provision(_identity())

    with pytest.raises(AuthServiceError) as excinfo:
        identity_admin.unlink_provider(db_session, account_id=resolved.account.id, provider="google")
    assert excinfo.value.code == "auth.last_sign_in_method"
    assert _subject_row(db_session).status == "verified"

    with pytest.raises(AuthServiceError) as missing:
        identity_admin.unlink_provider(db_session, account_id=resolved.account.id, provider="github")
    assert missing.value.code == "auth.identifier_not_found"
