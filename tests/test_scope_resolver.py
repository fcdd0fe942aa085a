import uuid

import pytest

from services.auth import admin as identity_admin
from services.auth.binding_ledger import BindingLedger
from services.auth.common import AuthServiceError
from services.auth.scope_resolver import EMPTY_SCOPE, PortalScope, ScopeResolver, authorize


@pytest.fixture()
def staff(make_account, add_membership, tenancy):
    account = make_account("staff@example.com", account_type="company")
    add_membership(account, organization=tenancy.org)
    return account


@pytest.fixture()
def client_user(make_account, add_membership, tenancy):
    account = make_account("client@example.com")
    add_membership(account, customer=tenancy.acme)
    return account


def test_company_scope_covers_whole_organisation(db_session, staff, tenancy):
    scope = ScopeResolver(db_session).resolve(staff.id)

    assert scope.kind == "company"
    assert scope.organization_ids == {tenancy.org.id}
    assert scope.customer_ids == {tenancy.acme.id, tenancy.globex.id}
    assert scope.project_ids == {tenancy.solar.id, tenancy.wind.id, tenancy.hydro.id}
    assert scope.aggregate is False
    authorize(scope, customer_id=tenancy.globex.id, project_id=tenancy.hydro.id, mutating=True)


def test_company_aggregate_view_is_read_only(db_session, staff, tenancy):
    scope = ScopeResolver(db_session).resolve(staff.id, view_all_customers=True)

    assert scope.aggregate is True
    authorize(scope, customer_id=tenancy.acme.id)
    with pytest.raises(AuthServiceError) as excinfo:
        authorize(scope, customer_id=tenancy.acme.id, mutating=True)
    assert excinfo.value.code == "auth.aggregate_read_only"


def test_company_can_focus_on_one_customer(db_session, staff, tenancy):
    scope = ScopeResolver(db_session).resolve(staff.id, customer_id=tenancy.acme.id)

    assert scope.active_customer_id == tenancy.acme.id
    assert scope.customer_ids == {tenancy.acme.id}
    assert scope.project_ids == {tenancy.solar.id, tenancy.wind.id}
    with pytest.raises(AuthServiceError) as excinfo:
        authorize(scope, project_id=tenancy.hydro.id)
    assert excinfo.value.kind == "Forbidden"


def test_company_cannot_focus_outside_organisation(db_session, staff):
    with pytest.raises(AuthServiceError) as excinfo:
        ScopeResolver(db_session).resolve(staff.id, customer_id=uuid.uuid4())
    assert excinfo.value.kind == "Forbidden"


def test_customer_scope_is_pinned_to_membership(db_session, client_user, tenancy):
    scope = ScopeResolver(db_session).resolve(client_user.id)

    assert scope.kind == "customer"
    assert scope.customer_ids == {tenancy.acme.id}
    assert scope.project_ids == {tenancy.solar.id, tenancy.wind.id}
    authorize(scope, project_id=tenancy.solar.id, mutating=True)
    authorize(scope, project_id=tenancy.wind.id)
    with pytest.raises(AuthServiceError):
        authorize(scope, project_id=tenancy.hydro.id)
    with pytest.raises(AuthServiceError):
        authorize(scope, customer_id=tenancy.globex.id)


def test_reports_only_grant_blocks_writes(db_session, client_user, tenancy):
    scope = ScopeResolver(db_session).resolve(client_user.id)
    assert scope.grant_for(tenancy.wind.id).access_level == "reports_only"
    with pytest.raises(AuthServiceError) as excinfo:
        authorize(scope, project_id=tenancy.wind.id, mutating=True)
    assert excinfo.value.kind == "Forbidden"


def test_customer_cannot_use_aggregate_view(db_session, client_user):
    with pytest.raises(AuthServiceError) as excinfo:
        ScopeResolver(db_session).resolve(client_user.id, view_all_customers=True)
    assert excinfo.value.code == "auth.aggregate_not_allowed"


def test_pending_account_has_no_access_until_approved(db_session, make_account, tenancy):
    account = make_account("pending@example.com", status="pending_approval")
    resolver = ScopeResolver(db_session)

    scope = resolver.resolve(account.id)
    assert scope == EMPTY_SCOPE
    with pytest.raises(AuthServiceError) as excinfo:
        authorize(scope, customer_id=tenancy.acme.id)
    assert excinfo.value.kind == "Unauthenticated"

    admin = make_account("admin@example.com", role="admin", account_type="company")
    identity_admin.approve_account(
        db_session,
        account_id=account.id,
        actor_id=admin.id,
        account_type="customer",
        customer_id=tenancy.acme.id,
    )
    approved = resolver.resolve(account.id)
    authorize(approved, customer_id=tenancy.acme.id)


def test_account_without_memberships_is_empty(db_session, make_account):
    account = make_account("lonely@example.com", account_type="company")
    assert ScopeResolver(db_session).resolve(account.id).is_empty


def test_revoked_identifier_resolves_to_empty_scope(db_session, client_user):
    phone = "+15557654321"
    ledger = BindingLedger(db_session)
    issue = ledger.request_binding(client_user.id, "phone", phone)
    verified = ledger.verify_binding(client_user.id, issue.challenge_id, issue.code)
    resolver = ScopeResolver(db_session)
    assert not resolver.resolve_for_identifier("phone", phone).is_empty

    identity_admin.revoke_identifier(
        db_session,
        account_id=client_user.id,
        identifier_id=verified.identifier_id,
        actor_id=client_user.id,
    )
    assert resolver.resolve_for_identifier("phone", phone) == EMPTY_SCOPE


def test_scope_claims_survive_round_trip(db_session, client_user):
    scope = ScopeResolver(db_session).resolve(client_user.id)
    restored = PortalScope.from_claims(scope.to_claims(), client_user.id)
    assert restored == scope
    assert PortalScope.from_claims({"k": "customer", "c": ["not-a-uuid"]}, None) == EMPTY_SCOPE
