"""Dashboard cache invalidation after a committed repair.

Invalidation is best effort: a failure is logged and reported back as False,
never raised, because the repair it follows has already been committed.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

REDIS_DISABLED_URL = "memory://"
DASHBOARD_KEY_PREFIX = "dashboard:"
DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS = 2.0


def dashboard_cache_key(patient_identity: str) -> str:
    return f"{DASHBOARD_KEY_PREFIX}{patient_identity}"


class CacheInvalidator(Protocol):
    def invalidate(self, patient_identity: str) -> bool:
        ...

    def close(self) -> None:
        ...


class NullCacheInvalidator:
    def __init__(self) -> None:
        self.invalidated: list[str] = []

    def invalidate(self, patient_identity: str) -> bool:
        self.invalidated.append(patient_identity)
        return True

    def close(self) -> None:
        pass


class RedisCacheInvalidator:
    def __init__(self, client) -> None:
        self._client = client

    def close(self) -> None:
        self._client.close()

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheInvalidator":
        import redis

        pool = redis.ConnectionPool.from_url(
            url,
            socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
            socket_timeout=DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS,
            retry_on_timeout=True,
        )
        return cls(redis.Redis(connection_pool=pool))

    def invalidate(self, patient_identity: str) -> bool:
        import redis

        key = dashboard_cache_key(patient_identity)
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            logger.warning(
                "Dashboard cache delete failed",
                extra={"patient_identity": patient_identity, "error": str(exc)},
            )
            return False
        return True


class HttpCacheInvalidator:
    """POSTs to the app's admin invalidate-cache endpoint."""

    def __init__(
        self,
        url: str,
        token: str | None,
        timeout_seconds: float = 3.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def close(self) -> None:
        self._client.close()

    def invalidate(self, patient_identity: str) -> bool:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            response = self._client.post(
                self._url, json={"patient_id": patient_identity}, headers=headers
            )
        except httpx.RequestError as exc:
            logger.warning(
                "Cache invalidate request failed",
                extra={"patient_identity": patient_identity, "error": str(exc)},
            )
            return False
        if response.status_code >= 400:
            logger.warning(
                "Cache invalidate returned %s",
                response.status_code,
                extra={"patient_identity": patient_identity},
            )
            return False
        return True


def build_cache_invalidator(
    redis_url: str | None,
    invalidate_url: str | None = None,
    admin_token: str | None = None,
    timeout_seconds: float = 3.0,
) -> CacheInvalidator:
    if redis_url and redis_url.strip().lower() != REDIS_DISABLED_URL:
        return RedisCacheInvalidator.from_url(redis_url.strip())
    if invalidate_url:
        return HttpCacheInvalidator(invalidate_url, admin_token, timeout_seconds)
    logger.info("No cache backend configured; invalidation is a no-op")
    return NullCacheInvalidator()
