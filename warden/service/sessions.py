from __future__ import annotations

import json
import secrets
import time
from typing import Callable, Dict, List, Optional, Tuple

from warden.config import FailurePolicy, Settings
from warden.logging import get_logger
from warden.service.policy import handle_store_outage
from warden.storage.base import KeyValueStore, atomic_update
from warden.storage.errors import StoreUnavailable
from warden.storage.models import DeviceInfo, Session

logger = get_logger(__name__)


class SessionRegistry:
    """Per-device sessions with a sliding TTL and a per-principal cap.

    Each session is its own record (``session:{principal}:{sid}``) whose TTL is
    reset on every successful validation. The per-principal index maps session
    ids to ``[created_at, sequence]`` and is only ever changed through
    compare-and-set, so simultaneous logins on several devices cannot both
    slip under the cap or evict the wrong sessions.
    """

    SESSION_KEY = "session:{principal_id}:{session_id}"
    INDEX_KEY = "sessions:{principal_id}"
    SEQUENCE_KEY = "sessions:seq:{principal_id}"

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        self.max_sessions = settings.max_concurrent_sessions
        self.ttl_seconds = settings.session_ttl_seconds
        self.failure_policy: FailurePolicy = settings.auth_failure_policy

    def _session_key(self, principal_id: str, session_id: str) -> str:
        return self.SESSION_KEY.format(principal_id=principal_id, session_id=session_id)

    def _index_key(self, principal_id: str) -> str:
        return self.INDEX_KEY.format(principal_id=principal_id)

    async def create(self, principal_id: str, device: Optional[DeviceInfo] = None) -> str:
        now = self._clock()
        session_id = secrets.token_hex(32)
        try:
            sequence = await self.store.incr(
                self.SEQUENCE_KEY.format(principal_id=principal_id)
            )
            session = Session(
                session_id=session_id,
                principal_id=principal_id,
                created_at=now,
                last_activity_at=now,
                ttl_seconds=self.ttl_seconds,
                sequence=sequence,
                device=device or DeviceInfo(),
            )
            await self.store.set(
                self._session_key(principal_id, session_id), session.to_json(), self.ttl_seconds
            )
            evicted = await self.enforce_concurrency_limit(
                principal_id, admit=(session_id, now, sequence)
            )
        except StoreUnavailable as exc:
            handle_store_outage(
                FailurePolicy.CLOSED,
                exc,
                component="session",
                operation="create",
                principal_id=principal_id,
            )
            raise
        logger.info(
            "session_created",
            principal_id=principal_id,
            session_id=session_id,
            device_id=session.device.device_id,
            evicted=len(evicted),
        )
        return session_id

    async def _load_index(self, principal_id: str) -> Dict[str, List[float]]:
        raw = await self.store.get(self._index_key(principal_id))
        return json.loads(raw) if raw else {}

    async def _dead_sessions(self, principal_id: str) -> List[str]:
        dead = []
        for session_id in await self._load_index(principal_id):
            if not await self.store.exists(self._session_key(principal_id, session_id)):
                dead.append(session_id)
        return dead

    async def enforce_concurrency_limit(
        self,
        principal_id: str,
        *,
        admit: Optional[Tuple[str, float, int]] = None,
    ) -> List[str]:
        """Trim the principal's sessions to the cap, oldest-created first.

        ``admit`` adds a freshly created session to the index in the same
        compare-and-set step. Ties on creation time are broken by the
        per-principal sequence number. Returns the evicted session ids.
        """
        dead = set(await self._dead_sessions(principal_id))
        limit = self.max_sessions

        def _trim(current: Optional[Dict[str, List[float]]]):
            index = {sid: entry for sid, entry in (current or {}).items() if sid not in dead}
            if admit is not None:
                session_id, created_at, sequence = admit
                index[session_id] = [created_at, sequence]
            ordered = sorted(index.items(), key=lambda item: (item[1][0], item[1][1]))
            overflow = max(0, len(ordered) - limit)
            evicted = [sid for sid, _ in ordered[:overflow]]
            for sid in evicted:
                index.pop(sid)
            return (index or None), evicted

        evicted = await atomic_update(
            self.store,
            self._index_key(principal_id),
            _trim,
            retries=self.settings.store_cas_retries,
        )
        if evicted:
            await self.store.delete(*(self._session_key(principal_id, sid) for sid in evicted))
            logger.info(
                "sessions_evicted",
                principal_id=principal_id,
                session_ids=evicted,
                limit=limit,
            )
        return evicted

    async def get(self, principal_id: str, session_id: str) -> Optional[Session]:
        raw = await self.store.get(self._session_key(principal_id, session_id))
        return Session.from_json(raw) if raw else None

    async def validate(self, principal_id: str, session_id: str) -> bool:
        """Return True for a live session and slide its expiry forward."""
        if not session_id:
            return False
        key = self._session_key(principal_id, session_id)
        try:
            raw = await self.store.get(key)
            if not raw:
                return False
            if session_id not in await self._load_index(principal_id):
                return False
            session = Session.from_json(raw)
            session.last_activity_at = self._clock()
            # Plain set: a lost race with another touch only loses a timestamp.
            await self.store.set(key, session.to_json(), self.ttl_seconds)
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="session",
                operation="validate",
                principal_id=principal_id,
            )
            return True
        return True

    async def list_active(self, principal_id: str) -> List[Session]:
        sessions = []
        for session_id in await self._load_index(principal_id):
            session = await self.get(principal_id, session_id)
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda s: (s.created_at, s.sequence))
        return sessions

    async def revoke(self, principal_id: str, session_id: str) -> bool:
        def _drop(current):
            index = dict(current or {})
            found = index.pop(session_id, None) is not None
            return (index or None), found

        try:
            await atomic_update(
                self.store,
                self._index_key(principal_id),
                _drop,
                retries=self.settings.store_cas_retries,
            )
            removed = await self.store.delete(self._session_key(principal_id, session_id))
        except StoreUnavailable as exc:
            handle_store_outage(
                FailurePolicy.CLOSED,
                exc,
                component="session",
                operation="revoke",
                principal_id=principal_id,
            )
            raise
        if removed:
            logger.info("session_revoked", principal_id=principal_id, session_id=session_id)
        return bool(removed)

    async def revoke_all(self, principal_id: str) -> int:
        """Drop every session of a principal; returns how many were live."""

        def _clear(current):
            return None, list((current or {}).keys())

        try:
            session_ids = await atomic_update(
                self.store,
                self._index_key(principal_id),
                _clear,
                retries=self.settings.store_cas_retries,
            )
            removed = 0
            if session_ids:
                removed = await self.store.delete(
                    *(self._session_key(principal_id, sid) for sid in session_ids)
                )
        except StoreUnavailable as exc:
            handle_store_outage(
                FailurePolicy.CLOSED,
                exc,
                component="session",
                operation="revoke_all",
                principal_id=principal_id,
            )
            raise
        logger.info("sessions_revoked_all", principal_id=principal_id, count=removed)
        return removed
