import os
from types import SimpleNamespace
from typing import Callable, Dict, Generator, Optional

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-0123456789abcdef0123456789")
os.environ.setdefault("AUTH_STATE_SECRET", "test-state-secret-0123456789abcdef")
os.environ.setdefault("AUTH_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("AUTH_ARGON2_TIME_COST", "1")
os.environ.setdefault("AUTH_ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "google-secret")
os.environ.setdefault("GITHUB_CLIENT_ID", "github-client")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "github-secret")
os.environ.pop("MICROSOFT_CLIENT_ID", None)
os.environ.pop("MICROSOFT_CLIENT_SECRET", None)
os.environ.pop("AUTH_RATE_LIMIT_REDIS_URL", None)
os.environ.pop("AUTH_BINDING_CHANNEL_NUMBER", None)

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from core.auth.settings import get_auth_settings
from database import Base, get_db
from models.account import Account
from models.identifier import AccountIdentifier
from models.tenancy import (
    Customer,
    CustomerMember,
    CustomerProjectGrant,
    Organization,
    OrganizationMember,
    Project,
)
from services.auth import common as auth_common
from services.auth.common import utcnow
from services.auth.flows import issue_portal_session
from services.auth.password import get_password_hasher, hash_password
from services.auth_rate_limiter import RateLimitResult, reset_local_windows
from web.routers import auth as auth_router
from web.routers import identity as identity_router


@pytest.fixture(autouse=True)
def _fresh_auth_state() -> Generator[None, None, None]:
    get_auth_settings.cache_clear()
    get_password_hasher.cache_clear()
    reset_local_windows()
    yield
    get_auth_settings.cache_clear()
    get_password_hasher.cache_clear()
    reset_local_windows()


@pytest.fixture()
def unlimited_rate_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        auth_common,
        "_check_limit",
        lambda *_, **__: RateLimitResult(allowed=True, remaining=None, reset_at=None),
    )


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_account(db_session: Session) -> Callable[..., Account]:
    def _make(
        email: str = "user@example.com",
        *,
        status: str = "active",
        account_type: str = "customer",
        role: str = "user",
        password: Optional[str] = None,
    ) -> Account:
        now = utcnow()
        account = Account(
            primary_email=email,
            status=status,
            account_type=account_type,
            role=role,
            email_verified_at=now,
            password_hash=hash_password(password) if password else None,
        )
        db_session.add(account)
        db_session.flush()
        db_session.add(
            AccountIdentifier(
                account_id=account.id,
                identifier_type="email",
                value=email,
                status="verified",
                verified_at=now,
            )
        )
        db_session.commit()
        return account

    return _make


@pytest.fixture()
def tenancy(db_session: Session) -> SimpleNamespace:
    """One organisation, two customers, three projects.

    ``acme`` sees ``solar`` (full) and ``wind`` (reports only); ``globex`` sees ``hydro``.
    """
    org = Organization(name="Sunrise Energy")
    db_session.add(org)
    db_session.flush()
    acme = Customer(organization_id=org.id, name="Acme Offtake")
    globex = Customer(organization_id=org.id, name="Globex Power")
    solar = Project(organization_id=org.id, name="Solar Farm")
    wind = Project(organization_id=org.id, name="Wind Park")
    hydro = Project(organization_id=org.id, name="Hydro Dam")
    db_session.add_all([acme, globex, solar, wind, hydro])
    db_session.flush()
    db_session.add_all(
        [
            CustomerProjectGrant(customer_id=acme.id, project_id=solar.id, access_level="full"),
            CustomerProjectGrant(customer_id=acme.id, project_id=wind.id, access_level="reports_only"),
            CustomerProjectGrant(customer_id=globex.id, project_id=hydro.id, access_level="full"),
        ]
    )
    db_session.commit()
    return SimpleNamespace(org=org, acme=acme, globex=globex, solar=solar, wind=wind, hydro=hydro)


@pytest.fixture()
def add_membership(db_session: Session) -> Callable[..., None]:
    def _add(account: Account, *, organization=None, customer=None, role: Optional[str] = None) -> None:
        if organization is not None:
            db_session.add(OrganizationMember(organization_id=organization.id, account_id=account.id, role=role or "member"))
        if customer is not None:
            db_session.add(CustomerMember(customer_id=customer.id, account_id=account.id, role=role or "VIEWER"))
        db_session.commit()

    return _add


@pytest.fixture()
def auth_headers(db_session: Session) -> Callable[..., Dict[str, str]]:
    def _headers(account: Account, **scope_kwargs) -> Dict[str, str]:
        result = issue_portal_session(db_session, account, **scope_kwargs)
        return {"Authorization": f"Bearer {result.session.token}"}

    return _headers


@pytest.fixture()
def api_app(session_factory: sessionmaker) -> FastAPI:
    app = FastAPI()
    app.include_router(auth_router.router, prefix="/api/v1")
    app.include_router(identity_router.router, prefix="/api/v1")

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture()
def api_client(api_app: FastAPI) -> Generator[TestClient, None, None]:
    client = TestClient(api_app)
    try:
        yield client
    finally:
        client.close()
