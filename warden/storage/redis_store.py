from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Set, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from warden.logging import get_logger
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class RedisStore:
    """Redis-backed key-value store shared by every instance of the service.

    Counters and compare-and-set run as Lua scripts so each is a single atomic
    step on the server. Every command is bounded by ``timeout_seconds``; a
    timeout or connection failure surfaces as ``StoreUnavailable``.
    """

    _INCR_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if value == 1 and ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return value
"""

    # ARGV: has_expected, expected, has_value, value, ttl
    _CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '0' then
  if current then
    return 0
  end
elseif current ~= ARGV[2] then
  return 0
end
if ARGV[3] == '0' then
  redis.call('DEL', KEYS[1])
  return 1
end
local ttl = tonumber(ARGV[5])
if ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[4], 'EX', ttl)
else
  redis.call('SET', KEYS[1], ARGV[4])
end
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        timeout_seconds: float = 2.0,
        namespace: str = "warden:",
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.namespace = namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._incr = self.client.register_script(self._INCR_SCRIPT)
        self._cas = self.client.register_script(self._CAS_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            logger.warning(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"redis {operation} failed", detail={"operation": operation}
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(self._key(key)))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ex = max(1, int(ttl_seconds)) if ttl_seconds is not None else None
        await self._call("set", self.client.set(self._key(key), value, ex=ex))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(
            await self._call("delete", self.client.delete(*(self._key(k) for k in keys)))
        )

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(self._key(key))))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = int(await self._call("ttl", self.client.ttl(self._key(key))))
        # -2: missing key, -1: no expiry
        if remaining < 0:
            return None
        return remaining

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        ttl = int(ttl_seconds) if ttl_seconds else 0
        value = await self._call(
            "incr", self._incr(keys=[self._key(key)], args=[ttl])
        )
        return int(value)

    async def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> int:
        if not members:
            return 0
        pipe = self.client.pipeline()
        pipe.sadd(self._key(key), *members)
        if ttl_seconds:
            pipe.expire(self._key(key), max(1, int(ttl_seconds)))
        results = await self._call("sadd", pipe.execute())
        return int(results[0])

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("srem", self.client.srem(self._key(key), *members)))

    async def smembers(self, key: str) -> Set[str]:
        members = await self._call("smembers", self.client.smembers(self._key(key)))
        return set(members or ())

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: Optional[str],
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        args = [
            "0" if expected is None else "1",
            expected or "",
            "0" if value is None else "1",
            value or "",
            max(1, int(ttl_seconds)) if ttl_seconds else 0,
        ]
        result = await self._call(
            "compare_and_set", self._cas(keys=[self._key(key)], args=args)
        )
        return bool(int(result))

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.aclose()
