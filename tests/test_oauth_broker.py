import base64
import json
from datetime import timedelta
from typing import Callable, Dict, List
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import select

from models.identifier import OAuthExchangeState
from services.auth import flows
from services.auth.common import AuthServiceError, utcnow
from services.auth.oauth_broker import OAuthBroker, load_oauth_settings
from services.auth.session_issuer import SessionIssuer

REDIRECT = "https://portal.example.com/auth/callback"


def _json(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def _routes(routes: Dict[str, Callable[[httpx.Request], httpx.Response]], calls: List[str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.method} {request.url.host}{request.url.path}"
        calls.append(key)
        if key not in routes:
            return httpx.Response(404, json={"error": "unexpected"})
        return routes[key](request)

    return httpx.MockTransport(handler)


def _google_routes(userinfo: Dict) -> Dict[str, Callable[[httpx.Request], httpx.Response]]:
    return {
        "POST oauth2.googleapis.com/token": lambda request: _json({"access_token": "google-token"}),
        "GET www.googleapis.com/oauth2/v2/userinfo": lambda request: _json(userinfo),
    }


def _broker(routes=None, calls=None, **kwargs) -> OAuthBroker:
    transport = _routes(routes or {}, calls if calls is not None else [])
    return OAuthBroker(load_oauth_settings(), transport=transport, **kwargs)


def test_available_providers_reports_configuration():
    providers = {entry["name"]: entry["configured"] for entry in _broker().available_providers()}
    assert providers == {"github": True, "google": True, "microsoft": False}


def test_begin_auth_builds_provider_url():
    redirect = _broker().begin_auth("google", REDIRECT)
    query = parse_qs(urlparse(redirect.auth_url).query)
    assert query["client_id"] == ["google-client"]
    assert query["redirect_uri"] == [REDIRECT]
    assert query["state"] == [redirect.state]
    assert query["response_type"] == ["code"]
    decoded = _broker().decode_state(redirect.state)
    assert decoded.provider == "google"
    assert decoded.nonce == redirect.nonce


def test_tampered_state_is_rejected():
    broker = _broker()
    state = broker.begin_auth("google", REDIRECT).state
    padded = state + "=" * (-len(state) % 4)
    blob = json.loads(base64.urlsafe_b64decode(padded))
    blob["p"]["redirectUri"] = "https://evil.example.com/steal"
    forged = base64.urlsafe_b64encode(json.dumps(blob).encode()).decode().rstrip("=")

    with pytest.raises(AuthServiceError) as excinfo:
        broker.decode_state(forged)
    assert excinfo.value.code == "auth.oauth_invalid_state"

    with pytest.raises(AuthServiceError):
        broker.decode_state("garbage!!")


def test_expired_state_is_rejected():
    state = _broker().begin_auth("google", REDIRECT).state
    later = utcnow() + timedelta(minutes=11)
    with pytest.raises(AuthServiceError) as excinfo:
        _broker(clock=lambda: later).decode_state(state)
    assert excinfo.value.kind == "Expired"


def test_google_exchange_normalises_identity():
    calls: List[str] = []
    broker = _broker(
        _google_routes({"id": "1001", "email": "Ana.Lee@Example.com", "name": "Ana Lee", "verified_email": True}),
        calls,
    )
    state = broker.begin_auth("google", REDIRECT).state
    identity = broker.complete_auth("google", "auth-code", state)

    assert identity.provider == "google"
    assert identity.subject_id == "1001"
    assert identity.email == "ana.lee@example.com"
    assert identity.email_verified is True
    assert calls == ["POST oauth2.googleapis.com/token", "GET www.googleapis.com/oauth2/v2/userinfo"]


def test_github_falls_back_to_email_endpoint():
    routes = {
        "POST github.com/login/oauth/access_token": lambda request: _json({"access_token": "gh-token"}),
        "GET api.github.com/user": lambda request: _json({"id": 42, "login": "octo", "email": None}),
        "GET api.github.com/user/emails": lambda request: _json(
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ]
        ),
    }
    broker = _broker(routes)
    identity = broker.complete_auth("github", "code", broker.begin_auth("github", REDIRECT).state)

    assert identity.subject_id == "42"
    assert identity.email == "octo@example.com"
    assert identity.email_verified is True
    assert identity.display_name == "octo"


def test_rejected_code_surfaces_exchange_failure():
    routes = {"POST oauth2.googleapis.com/token": lambda request: _json({"error": "invalid_grant"}, 400)}
    broker = _broker(routes)
    with pytest.raises(AuthServiceError) as excinfo:
        broker.complete_auth("google", "used-code", broker.begin_auth("google", REDIRECT).state)
    assert excinfo.value.kind == "ProviderError"
    assert excinfo.value.code == "auth.provider_exchange_failed"


def test_token_endpoint_outage_is_provider_error():
    routes = {"POST oauth2.googleapis.com/token": lambda request: httpx.Response(503)}
    broker = _broker(routes)
    with pytest.raises(AuthServiceError) as excinfo:
        broker.complete_auth("google", "code", broker.begin_auth("google", REDIRECT).state)
    assert excinfo.value.status_code == 502


def test_userinfo_transport_errors_are_retried_then_reported():
    calls: List[str] = []

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    routes = {
        "POST oauth2.googleapis.com/token": lambda request: _json({"access_token": "t"}),
        "GET www.googleapis.com/oauth2/v2/userinfo": unreachable,
    }
    broker = _broker(routes, calls)
    with pytest.raises(AuthServiceError) as excinfo:
        broker.complete_auth("google", "code", broker.begin_auth("google", REDIRECT).state)
    assert excinfo.value.kind == "ProviderError"
    assert calls.count("GET www.googleapis.com/oauth2/v2/userinfo") == 2


def test_missing_email_is_reported():
    broker = _broker(_google_routes({"id": "1001", "name": "No Mail"}))
    with pytest.raises(AuthServiceError) as excinfo:
        broker.complete_auth("google", "code", broker.begin_auth("google", REDIRECT).state)
    assert excinfo.value.code == "auth.provider_no_email"
    assert excinfo.value.status_code == 422


def test_state_from_other_provider_is_rejected():
    broker = _broker()
    state = broker.begin_auth("google", REDIRECT).state
    with pytest.raises(AuthServiceError) as excinfo:
        broker.complete_auth("github", "code", state)
    assert excinfo.value.code == "auth.oauth_state_mismatch"


def test_redirect_mismatch_is_rejected():
    broker = _broker()
    state = broker.begin_auth("google", REDIRECT).state
    with pytest.raises(AuthServiceError) as excinfo:
        broker.complete_auth("google", "code", state, "https://other.example.com/cb")
    assert excinfo.value.code == "auth.oauth_state_mismatch"


@pytest.mark.parametrize(
    "provider, code",
    [("microsoft", "auth.provider_misconfigured"), ("myspace", "auth.provider_unknown")],
)
def test_unusable_providers(provider, code):
    with pytest.raises(AuthServiceError) as excinfo:
        _broker().begin_auth(provider, REDIRECT)
    assert excinfo.value.code == code


def test_redirect_uri_must_be_absolute():
    with pytest.raises(AuthServiceError) as excinfo:
        _broker().begin_auth("google", "/relative/callback")
    assert excinfo.value.code == "auth.invalid_redirect_uri"


# ------------------------------------------------------------ login flow


def test_oauth_login_provisions_pending_account_once(db_session):
    broker = _broker(_google_routes({"id": "77", "email": "new@example.com", "verified_email": True}))
    redirect = flows.begin_oauth(db_session, "google", REDIRECT, broker=broker)
    assert db_session.execute(select(OAuthExchangeState)).scalar_one().consumed_at is None

    result = flows.complete_oauth(db_session, "google", "code", redirect.state, broker=broker)

    assert result.created is True
    assert result.account_status == "pending_approval"
    assert result.scope.is_empty
    assert result.session is not None

    with pytest.raises(AuthServiceError) as replay:
        flows.complete_oauth(db_session, "google", "code", redirect.state, broker=broker)
    assert replay.value.code == "auth.oauth_state_consumed"


def test_missing_code_does_not_burn_state(db_session):
    broker = _broker(_google_routes({"id": "78", "email": "later@example.com", "verified_email": True}))
    redirect = flows.begin_oauth(db_session, "google", REDIRECT, broker=broker)

    with pytest.raises(AuthServiceError) as excinfo:
        flows.complete_oauth(db_session, "google", "", redirect.state, broker=broker)
    assert excinfo.value.code == "auth.oauth_missing_code"

    result = flows.complete_oauth(db_session, "google", "code", redirect.state, broker=broker)
    assert result.created is True


def test_returning_oauth_user_gets_existing_account(db_session, make_account, add_membership, tenancy):
    account = make_account("returning@example.com")
    add_membership(account, customer=tenancy.acme)
    broker = _broker(_google_routes({"id": "90", "email": "returning@example.com", "verified_email": True}))

    first = flows.complete_oauth(
        db_session, "google", "code", flows.begin_oauth(db_session, "google", REDIRECT, broker=broker).state, broker=broker
    )
    second = flows.complete_oauth(
        db_session, "google", "code", flows.begin_oauth(db_session, "google", REDIRECT, broker=broker).state, broker=broker
    )

    assert first.account_id == second.account_id == account.id
    assert first.created is False
    assert second.scope.active_customer_id == tenancy.acme.id


def test_github_profile_email_needs_verified_entry():
    routes = {
        "POST github.com/login/oauth/access_token": lambda request: _json({"access_token": "gh-token"}),
        "GET api.github.com/user": lambda request: _json({"id": 7, "login": "squatter", "email": "ceo@example.com"}),
        "GET api.github.com/user/emails": lambda request: _json(
            [
                {"email": "ceo@example.com", "primary": False, "verified": False},
                {"email": "squatter@example.com", "primary": True, "verified": True},
            ]
        ),
    }
    broker = _broker(routes)
    identity = broker.complete_auth("github", "code", broker.begin_auth("github", REDIRECT).state)

    assert identity.email == "ceo@example.com"
    assert identity.email_verified is False


def test_github_verified_flag_must_be_true():
    routes = {
        "POST github.com/login/oauth/access_token": lambda request: _json({"access_token": "gh-token"}),
        "GET api.github.com/user": lambda request: _json({"id": 8, "login": "octo", "email": None}),
        "GET api.github.com/user/emails": lambda request: _json(
            [{"email": "octo@example.com", "primary": True, "verified": "yes"}]
        ),
    }
    broker = _broker(routes)
    identity = broker.complete_auth("github", "code", broker.begin_auth("github", REDIRECT).state)
    assert identity.email_verified is False


def test_link_oauth_attaches_subject_to_signed_in_account(db_session, make_account, auth_headers):
    account = make_account("owner@example.com")
    claims = SessionIssuer().validate(auth_headers(account)["Authorization"].split(" ", 1)[1])
    broker = _broker(_google_routes({"id": "555", "email": "someone-else@example.com", "verified_email": False}))
    redirect = flows.begin_oauth(db_session, "google", REDIRECT, broker=broker)

    linked = flows.link_oauth(db_session, claims, "google", "code", redirect.state, broker=broker)
    assert linked.linked is True
    assert linked.account.id == account.id

    result = flows.complete_oauth(
        db_session, "google", "code", flows.begin_oauth(db_session, "google", REDIRECT, broker=broker).state, broker=broker
    )
    assert result.account_id == account.id
    assert result.created is False

    with pytest.raises(AuthServiceError) as replay:
        flows.link_oauth(db_session, claims, "google", "code", redirect.state, broker=broker)
    assert replay.value.code == "auth.oauth_state_consumed"
