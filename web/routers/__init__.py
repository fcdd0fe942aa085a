"""FastAPI routers mounted under ``/api/v1``."""

from . import auth, health, identity

__all__ = ["auth", "health", "identity"]
