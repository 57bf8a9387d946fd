"""
Per-project tick lock.

Redis-backed when REDIS_URL is set (`SET key token NX PX ttl`), otherwise an
in-process dict guarded by a threading lock. Best-effort only: a lock that
outlives its TTL is simply taken over by the next tick.
"""

import os
import time
import uuid
import logging
import threading
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
LOCK_TTL_MS = int(os.getenv("TICK_LOCK_TTL_MS", "120000"))
KEY_PREFIX = "tick:project:"

# ── Lazy Redis client ────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            client = redis.from_url(redis_url, decode_responses=True)
            try:
                client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
                _redis_client = client
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e} - falling back to in-memory tick lock")
    return _redis_client


class TickLock:
    def __init__(self, redis_client=None, ttl_ms: int = LOCK_TTL_MS):
        self._redis = redis_client
        self._ttl_ms = ttl_ms
        self._tokens: Dict[str, str] = {}
        self._local: Dict[str, Tuple[str, float]] = {}
        self._mutex = threading.Lock()

    @classmethod
    def from_env(cls) -> "TickLock":
        return cls(get_redis())

    def _key(self, project_id: str) -> str:
        return f"{KEY_PREFIX}{project_id}"

    def acquire(self, project_id: str) -> bool:
        token = uuid.uuid4().hex
        if self._redis is not None:
            acquired = bool(self._redis.set(self._key(project_id), token, nx=True, px=self._ttl_ms))
        else:
            acquired = self._acquire_local(project_id, token)
        if acquired:
            with self._mutex:
                self._tokens[project_id] = token
        else:
            logger.info(f"[{project_id}] Tick already in progress elsewhere, skipping")
        return acquired

    def _acquire_local(self, project_id: str, token: str) -> bool:
        now = time.monotonic()
        with self._mutex:
            held = self._local.get(project_id)
            if held and held[1] > now:
                return False
            self._local[project_id] = (token, now + self._ttl_ms / 1000)
            return True

    def release(self, project_id: str) -> None:
        with self._mutex:
            token: Optional[str] = self._tokens.pop(project_id, None)
        if token is None:
            return
        if self._redis is not None:
            key = self._key(project_id)
            if self._redis.get(key) == token:
                self._redis.delete(key)
            return
        with self._mutex:
            held = self._local.get(project_id)
            if held and held[0] == token:
                del self._local[project_id]
