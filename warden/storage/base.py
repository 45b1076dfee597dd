from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional, Protocol, Set, Tuple, TypeVar

from warden.storage.errors import StoreUnavailable

T = TypeVar("T")


class KeyValueStore(Protocol):
    """Shared store backing sessions, lockout, revocation and rate limits.

    Implementations must make ``incr`` and ``compare_and_set`` atomic across
    every process sharing the store, and must bound each call with a timeout.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int: ...

    async def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: Optional[str],
        ttl_seconds: Optional[int] = None,
    ) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


async def atomic_update(
    store: KeyValueStore,
    key: str,
    mutate: Callable[[Optional[Any]], Tuple[Optional[Any], T]],
    *,
    ttl_seconds: Optional[int] = None,
    retries: int = 16,
) -> T:
    """Optimistic read-modify-write of a JSON document.

    ``mutate`` receives the decoded current value (or ``None``) and returns
    ``(new_value, result)``. A ``new_value`` of ``None`` deletes the key. The
    write only lands if nobody changed the key in between; otherwise the read
    is repeated. ``mutate`` must be free of side effects since it may run
    several times.
    """
    for _ in range(max(1, retries)):
        raw = await store.get(key)
        current = json.loads(raw) if raw is not None else None
        new_value, result = mutate(current)
        encoded = (
            json.dumps(new_value, separators=(",", ":"), sort_keys=True)
            if new_value is not None
            else None
        )
        if encoded == raw:
            return result
        if await store.compare_and_set(key, raw, encoded, ttl_seconds):
            return result
    raise StoreUnavailable(
        "compare_and_set retries exhausted", detail={"key": key, "retries": retries}
    )


__all__ = ["KeyValueStore", "atomic_update"]
