from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from database import get_db
from services.auth.common import utcnow
from services.auth.scope_resolver import EMPTY_SCOPE, PortalScope
from services.auth.session_issuer import SessionIssuer
from web.deps import require_scope
from web.middleware.auth_context import auth_context_middleware, extract_bearer


@pytest.fixture()
def scoped_client(session_factory):
    app = FastAPI()

    @app.middleware("http")
    async def attach(request: Request, call_next):
        return await auth_context_middleware(request, call_next)

    @app.get("/api/v1/projects/{projectId}")
    def read_project(projectId: str, scope: PortalScope = Depends(require_scope())):
        return {"projectId": projectId, "kind": scope.kind}

    @app.post("/api/v1/projects/{projectId}/notes")
    def write_project(projectId: str, scope: PortalScope = Depends(require_scope(mutating=True))):
        return {"projectId": projectId}

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("Basic abc", None),
        ("Bearer ", None),
        ("bearer token-123", "token-123"),
        ("  Bearer   spaced  ", "spaced"),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


def test_scope_guard_enforces_project_grants(scoped_client, make_account, add_membership, auth_headers, tenancy):
    member = make_account("client@example.com")
    add_membership(member, customer=tenancy.acme)
    headers = auth_headers(member)

    assert scoped_client.get(f"/api/v1/projects/{tenancy.solar.id}", headers=headers).status_code == 200
    assert scoped_client.post(f"/api/v1/projects/{tenancy.solar.id}/notes", headers=headers).status_code == 200
    assert scoped_client.get(f"/api/v1/projects/{tenancy.wind.id}", headers=headers).status_code == 200
    assert scoped_client.post(f"/api/v1/projects/{tenancy.wind.id}/notes", headers=headers).status_code == 403
    assert scoped_client.get(f"/api/v1/projects/{tenancy.hydro.id}", headers=headers).status_code == 403


def test_scope_guard_treats_empty_scope_as_anonymous(scoped_client, make_account, tenancy):
    pending = make_account("pending@example.com", status="pending_approval")
    token = SessionIssuer().issue(pending, EMPTY_SCOPE).token

    response = scoped_client.get(f"/api/v1/projects/{tenancy.solar.id}", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_middleware_rejects_expired_tokens(scoped_client, make_account, tenancy):
    account = make_account()
    stale = utcnow() - timedelta(hours=9)
    token = SessionIssuer(clock=lambda: stale).issue(account, EMPTY_SCOPE).token

    response = scoped_client.get(f"/api/v1/projects/{tenancy.solar.id}", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "TokenExpired"


def test_readiness_and_status_endpoints():
    from web.main import app

    with TestClient(app) as client:
        assert client.get("/").json()["status"] == "ok"
        ready = client.get("/healthz")
        assert ready.status_code == 200
        status = client.get("/api/v1/health/status").json()
        assert status["database"]["ok"] is True
        assert status["rateLimiter"] == {"backend": "local", "ok": True}
        assert status["fieldEncryption"] == {"ok": True}
        assert status["oauthProviders"] == ["github", "google"]
