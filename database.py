"""Engine, session factory and declarative base for the identity store."""

import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

load_dotenv()


def resolve_database_url() -> str:
    """Pick the DSN, refusing anything but PostgreSQL unless explicitly allowed.

    Unit tests run against in-memory SQLite by exporting ``DATABASE_ALLOW_NON_POSTGRES=1``.
    """
    url: Optional[str] = os.getenv("DATABASE_URL") or os.getenv("TEST_DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")
    if not url.lower().startswith("postgresql") and os.getenv("DATABASE_ALLOW_NON_POSTGRES", "0") != "1":
        raise RuntimeError(f"DATABASE_URL must be a PostgreSQL DSN. Current value: {url}")
    return url


def engine_options(url: str) -> Dict[str, Any]:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url:
        # one shared connection, otherwise every checkout sees an empty database
        options["poolclass"] = StaticPool
    return options


DATABASE_URL = resolve_database_url()
engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
