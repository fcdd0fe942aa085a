"""Fixed-window rate limiter for authentication workflows.

Counters live in Redis when ``AUTH_RATE_LIMIT_REDIS_URL`` is configured; otherwise (and whenever
Redis errors out) a process-local window is used so throttling is never silently skipped.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

import redis

from core.auth.settings import get_auth_settings
from core.logging import get_logger

logger = get_logger(__name__)

_CLIENT: Optional[redis.Redis] = None
_CLIENT_URL: Optional[str] = None
_CLIENT_ERROR_LOGGED = False


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: Optional[int]
    reset_at: Optional[datetime]
    backend_error: bool = False

    @property
    def retry_after(self) -> int:
        if not self.reset_at:
            return 60
        return max(int((self.reset_at - datetime.now(timezone.utc)).total_seconds()), 1)


class _LocalWindows:
    """Thread-safe in-process counters keyed like the Redis ones.

    Keys embed caller-supplied values such as emails, so lapsed windows are
    swept out every ``sweep_every`` hits instead of accumulating for the life of the process.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, sweep_every: int = 256) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_every = max(sweep_every, 1)
        self._hits = 0
        self._windows: Dict[str, Tuple[int, float]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, key: str, weight: int, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            self._hits += 1
            if self._hits >= self._sweep_every:
                self._sweep(now)
            count, expires_at = self._windows.get(key, (0, now + window_seconds))
            if now >= expires_at:
                count, expires_at = 0, now + window_seconds
            count += weight
            self._windows[key] = (count, expires_at)
            ttl = int(expires_at - now)
        return count, max(ttl, 1)

    def _sweep(self, now: float) -> None:
        self._hits = 0
        lapsed = [key for key, (_, expires_at) in self._windows.items() if now >= expires_at]
        for key in lapsed:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._hits = 0


_LOCAL = _LocalWindows()


def _get_client() -> Optional[redis.Redis]:
    global _CLIENT, _CLIENT_URL, _CLIENT_ERROR_LOGGED  # pylint: disable=global-statement
    url = get_auth_settings().rate_limit_redis_url
    if not url:
        return None
    if _CLIENT is not None and _CLIENT_URL == url:
        return _CLIENT
    try:
        _CLIENT = redis.Redis.from_url(url, decode_responses=False, socket_timeout=1.0)
        _CLIENT_URL = url
    except (redis.RedisError, ValueError) as exc:
        if not _CLIENT_ERROR_LOGGED:
            logger.warning("Auth rate limiter Redis init failed: %s", exc)
            _CLIENT_ERROR_LOGGED = True
        _CLIENT = None
    return _CLIENT


def _build_result(count: int, ttl: int, limit: int, *, backend_error: bool = False) -> RateLimitResult:
    return RateLimitResult(
        allowed=count <= limit,
        remaining=max(limit - count, 0),
        reset_at=datetime.now(timezone.utc) + timedelta(seconds=max(ttl, 0)),
        backend_error=backend_error,
    )


def check_limit(
    scope: str,
    identifier: Optional[str],
    *,
    limit: int,
    window_seconds: int = 60,
    weight: int = 1,
) -> RateLimitResult:
    if limit <= 0 or window_seconds <= 0 or weight <= 0:
        return RateLimitResult(allowed=True, remaining=None, reset_at=None)

    key = f"{get_auth_settings().rate_limit_prefix}:{scope}:{identifier or 'global'}"
    client = _get_client()
    if client is None:
        count, ttl = _LOCAL.hit(key, weight, window_seconds)
        return _build_result(count, ttl, limit)

    try:
        pipeline = client.pipeline()
        pipeline.incrby(key, weight)
        pipeline.ttl(key)
        count, ttl = pipeline.execute()
        if ttl is None or ttl < 0:
            client.expire(key, window_seconds)
            ttl = window_seconds
        return _build_result(int(count), int(ttl), limit)
    except redis.RedisError as exc:
        logger.warning("Auth rate limiter failed for %s - %s; using local window.", scope, exc)
        count, ttl = _LOCAL.hit(key, weight, window_seconds)
        return _build_result(count, ttl, limit, backend_error=True)


def backend_status() -> Dict[str, object]:
    """Which backend is counting right now; used by the health endpoint."""
    client = _get_client()
    if client is None:
        return {"backend": "local", "ok": True}
    try:
        client.ping()
        return {"backend": "redis", "ok": True}
    except redis.RedisError as exc:
        return {"backend": "redis", "ok": False, "error": str(exc)}


def reset_local_windows() -> None:
    _LOCAL.reset()


__all__ = ["RateLimitResult", "backend_status", "check_limit", "reset_local_windows"]
