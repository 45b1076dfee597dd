from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from warden.logging import get_logger
from warden.storage.models import PrincipalRecord

_Value = Union[str, Set[str]]


class MemoryStore:
    """In-process key-value store for single-instance deployments and tests.

    Mirrors the subset of Redis semantics the auth core relies on. Expiry is
    lazy: an entry is dropped the first time it is touched after its deadline,
    plus an explicit ``purge_expired`` sweep for idle keys.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Value]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            if value is None or isinstance(value, set):
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._deadline(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            if self._live(key) is None:
                return None
            _, expires_at = self._data[key]
            if expires_at is None:
                return None
            return max(0, int(round(expires_at - self._clock())))

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._data[key] = ("1", self._deadline(ttl_seconds))
                return 1
            if isinstance(current, set):
                raise TypeError(f"{key} holds a set, not a counter")
            count = int(current) + 1
            self._data[key] = (str(count), self._data[key][1])
            return count

    async def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            current = self._live(key)
            members_set: Set[str] = set(current) if isinstance(current, set) else set()
            before = len(members_set)
            members_set.update(members)
            deadline = self._deadline(ttl_seconds) if ttl_seconds else (
                self._data[key][1] if current is not None else None
            )
            self._data[key] = (members_set, deadline)
            return len(members_set) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if not isinstance(current, set):
                return 0
            before = len(current)
            remaining = current - set(members)
            if remaining:
                self._data[key] = (remaining, self._data[key][1])
            else:
                self._data.pop(key, None)
            return before - len(remaining)

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            current = self._live(key)
            return set(current) if isinstance(current, set) else set()

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: Optional[str],
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        with self._lock:
            current = self._live(key)
            if isinstance(current, set) or current != expected:
                return False
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = (value, self._deadline(ttl_seconds))
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key
                for key, (_, expires_at) in self._data.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                self._data.pop(key, None)
        return len(expired)


class MemoryPrincipalStore:
    """In-memory stand-in for the external user store."""

    def __init__(self) -> None:
        self._principals: Dict[str, PrincipalRecord] = {}
        self._by_identifier: Dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _normalize(identifier: str) -> str:
        return identifier.strip().lower()

    def create_principal(
        self,
        identifier: str,
        password_hash: Optional[str] = None,
        *,
        role: str = "user",
        principal_id: Optional[str] = None,
    ) -> PrincipalRecord:
        record = PrincipalRecord(
            id=principal_id or str(uuid.uuid4()),
            identifier=identifier,
            role=role,
            password_hash=password_hash,
        )
        with self._lock:
            key = self._normalize(identifier)
            if key in self._by_identifier:
                raise ValueError(f"principal already exists: {identifier}")
            self._principals[record.id] = record
            self._by_identifier[key] = record.id
        return record

    def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        return self._principals.get(principal_id)

    def get_principal_by_identifier(self, identifier: str) -> Optional[PrincipalRecord]:
        principal_id = self._by_identifier.get(self._normalize(identifier))
        return self._principals.get(principal_id) if principal_id else None

    def save_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._lock:
            record = self._principals[principal_id]
            record.password_hash = password_hash

    def set_mfa_secret(
        self, principal_id: str, secret: Optional[str], enabled: bool = False
    ) -> None:
        with self._lock:
            record = self._principals[principal_id]
            record.mfa_secret = secret
            record.mfa_enabled = enabled and secret is not None

    def list_principals(self) -> List[PrincipalRecord]:
        return list(self._principals.values())
