"""Environment variable helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional, Tuple, TypeVar

from dotenv import load_dotenv

from core.logging import get_logger

N = TypeVar("N", int, float)

logger = get_logger(__name__)

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def load_env_file(path: Optional[Path] = None) -> bool:
    """Load a .env file without overriding variables that are already exported."""
    env_path = path or Path(".env")
    if not env_path.exists():
        return False
    load_dotenv(dotenv_path=env_path, override=False)
    logger.debug("Loaded environment variables from %s", env_path)
    return True


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    """Stripped value of ``key``; blank values count as unset."""
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_number(key: str, default: N, cast: Callable[[str], N], minimum: Optional[N]) -> N:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        value = None
    if value is None or (minimum is not None and value < minimum):
        logger.warning("Invalid %s value '%s'. Falling back to %s.", key, raw, default)
        return default
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    return _env_number(key, default, int, minimum)


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    return _env_number(key, default, float, minimum)


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    logger.warning("Invalid boolean env %s='%s'. Using default=%s.", key, raw, default)
    return default


def env_list(key: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    """Split a comma or whitespace separated variable into a tuple."""
    raw = os.getenv(key)
    if raw is None:
        return default
    items = tuple(item for item in raw.replace(",", " ").split() if item)
    return items or default


__all__ = ["env_bool", "env_float", "env_int", "env_list", "env_str", "load_env_file"]
