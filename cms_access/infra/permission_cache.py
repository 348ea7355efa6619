from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from functools import lru_cache

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
PERMISSION_CACHE_ENABLED = os.getenv("PERMISSION_CACHE_ENABLED", "0") in {"1", "true", "yes"}
PERMISSION_CACHE_TTL_SEC = int(os.getenv("PERMISSION_CACHE_TTL_SEC", "300"))

GENERATION_KEY = "cms_access:perm_gen"


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class PermissionCache:
    def __init__(
        self,
        *,
        enabled: bool = PERMISSION_CACHE_ENABLED,
        ttl_sec: int = PERMISSION_CACHE_TTL_SEC,
        client_factory: Callable[[], Redis] = get_redis,
    ) -> None:
        self.enabled = enabled
        self.ttl_sec = ttl_sec
        self._client_factory = client_factory

    def _entry_key(self, generation: str, user_id: int) -> str:
        return f"cms_access:perms:{generation}:{user_id}"

    def _generation(self, client: Redis) -> str:
        value = client.get(GENERATION_KEY)
        return str(value) if value is not None else "0"

    def get(self, user_id: int) -> set[str] | None:
        if not self.enabled:
            return None
        try:
            client = self._client_factory()
            raw = client.get(self._entry_key(self._generation(client), user_id))
        except RedisError:
            logger.warning("permission cache read failed", extra={"user_id": user_id}, exc_info=True)
            return None
        if raw is None:
            return None
        return set(json.loads(raw))

    def put(
        self,
        user_id: int,
        permissions: set[str],
        generation: str | None = None,
        ttl_sec: int | None = None,
    ) -> None:
        if not self.enabled:
            return
        try:
            client = self._client_factory()
            key = self._entry_key(generation or self._generation(client), user_id)
            expiry = self.ttl_sec if ttl_sec is None else min(self.ttl_sec, ttl_sec)
            client.set(key, json.dumps(sorted(permissions)), ex=expiry)
        except RedisError:
            logger.warning("permission cache write failed", extra={"user_id": user_id}, exc_info=True)

    def current_generation(self) -> str | None:
        if not self.enabled:
            return None
        try:
            return self._generation(self._client_factory())
        except RedisError:
            logger.warning("permission cache generation read failed", exc_info=True)
            return None

    def invalidate(self) -> None:
        if not self.enabled:
            return
        try:
            self._client_factory().incr(GENERATION_KEY)
        except RedisError:
            logger.error("permission cache invalidation failed; entries expire by TTL", exc_info=True)


permission_cache = PermissionCache()
