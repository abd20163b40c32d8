"""Optional Redis tier for the signed-URL cache.

Connection lifecycle::

    disconnected --connect()--> connecting --PING ok--> connected
         ^                          |                       |
         +---- retries exhausted ---+---- any I/O error ----+

``connect()`` is the only place that retries (bounded exponential backoff).
Once the budget is spent the adapter parks in ``disconnected``; every other
operation returns immediately while disconnected, so a request never waits on
reconnection. Nothing here raises on Redis failure: errors are logged and a
neutral value (None / False / 0) is returned. Connection-level errors also flip
the state to ``disconnected``; a rejected command leaves the connection up.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from signed_urls.api.retry import RetryPolicy
from signed_urls.shared import CACHE_KEY_NAMESPACE

log = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"

_IO_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
# Errors that mean the connection is gone, as opposed to a rejected command.
_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, asyncio.TimeoutError)

_GLOB_SPECIAL = "\\*?[]"


def escape_glob(text: str) -> str:
    """Escape Redis MATCH glob metacharacters so *text* matches literally."""
    return "".join("\\" + ch if ch in _GLOB_SPECIAL else ch for ch in text)


class _ConnectFailed(Exception):
    pass


class RedisCache:
    """Async Redis adapter. Build with ``RedisCache.from_url`` or pass a ready client (tests)."""

    def __init__(
        self,
        client,
        *,
        max_retries: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        namespace: str = CACHE_KEY_NAMESPACE,
    ):
        self._client = client
        self._retry = RetryPolicy(
            max_attempts=max(1, max_retries),
            base_delay=base_delay,
            max_delay=max_delay,
            retry_on=(_ConnectFailed,),
            sleep=sleep,
        )
        self._namespace = namespace
        self._state = DISCONNECTED
        self._connect_lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str, *, max_retries: int = 5, timeout: float = 2.0) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, max_retries=max_retries)

    @property
    def state(self) -> str:
        return self._state

    def is_available(self) -> bool:
        return self._state == CONNECTED

    def _on_error(self, op: str, exc: BaseException) -> None:
        if not isinstance(exc, _CONNECTION_ERRORS):
            # Command-level failure (e.g. a bad reply); the connection itself is fine.
            log.warning(f"Redis {op} failed: {exc!r}")
            return
        if self._state != DISCONNECTED:
            log.warning(f"Redis {op} failed, distributed cache tier disabled: {exc!r}")
        else:
            log.debug(f"Redis {op} failed while disconnected: {exc!r}")
        self._state = DISCONNECTED

    async def _ping(self) -> None:
        try:
            await self._client.ping()
        except _IO_ERRORS as e:
            log.info(f"Redis ping failed: {e}")
            raise _ConnectFailed(str(e)) from e

    async def connect(self) -> bool:
        """Try to (re)connect within the retry budget. Concurrent callers share one attempt."""
        async with self._connect_lock:
            if self._state == CONNECTED:
                return True
            self._state = CONNECTING
            try:
                await self._retry.call(self._ping)
            except _ConnectFailed as e:
                self._state = DISCONNECTED
                log.warning(
                    f"Redis unreachable after {self._retry.max_attempts} attempts, "
                    f"using local cache only: {e}"
                )
                return False
            self._state = CONNECTED
            log.info("Redis connected, distributed cache tier enabled")
            return True

    async def get(self, key: str) -> Optional[str]:
        if not self.is_available():
            return None
        try:
            return await self._client.get(key)
        except _IO_ERRORS as e:
            self._on_error("get", e)
            return None

    async def mget(self, keys: list[str]) -> Optional[list[Optional[str]]]:
        """Pipelined multi-get. None (not a list of Nones) means the tier failed."""
        if not self.is_available() or not keys:
            return None
        try:
            return list(await self._client.mget(keys))
        except _IO_ERRORS as e:
            self._on_error("mget", e)
            return None

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> bool:
        if not self.is_available():
            return False
        try:
            await self._client.setex(key, max(1, int(ttl_seconds)), value)
            return True
        except _IO_ERRORS as e:
            self._on_error("setex", e)
            return False

    async def set_many(self, items: Iterable[tuple[str, str, int]]) -> bool:
        """SETEX every (key, value, ttl) in one non-transactional pipeline. False on any failure."""
        items = list(items)
        if not self.is_available():
            return False
        if not items:
            return True
        try:
            pipe = self._client.pipeline(transaction=False)
            for key, value, ttl in items:
                pipe.setex(key, max(1, int(ttl)), value)
            await pipe.execute()
            return True
        except _IO_ERRORS as e:
            self._on_error("pipeline", e)
            return False

    async def delete(self, *keys: str) -> int:
        if not self.is_available() or not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except _IO_ERRORS as e:
            self._on_error("delete", e)
            return 0

    async def _delete_by_glob(self, match: str) -> int:
        prefix = f"{self._namespace}:"
        batch: list[str] = []
        deleted = 0
        async for key in self._client.scan_iter(match=match, count=500):
            if not key.startswith(prefix):
                continue
            batch.append(key)
            if len(batch) >= 500:
                deleted += int(await self._client.delete(*batch))
                batch = []
        if batch:
            deleted += int(await self._client.delete(*batch))
        return deleted

    async def delete_matching(self, substring: str) -> int:
        """Best-effort SCAN for namespaced keys containing *substring*; returns keys removed."""
        if not self.is_available():
            return 0
        try:
            return await self._delete_by_glob(f"*{escape_glob(substring)}*")
        except _IO_ERRORS as e:
            self._on_error("scan", e)
            return 0

    async def flush_all(self) -> int:
        """Drop every key in our namespace (other data in the same Redis db is left alone)."""
        if not self.is_available():
            return 0
        try:
            return await self._delete_by_glob(f"{escape_glob(self._namespace)}:*")
        except _IO_ERRORS as e:
            self._on_error("flush", e)
            return 0

    async def close(self) -> None:
        self._state = DISCONNECTED
        try:
            await self._client.aclose()
        except _IO_ERRORS as e:
            log.debug(f"Redis close failed: {e}")
