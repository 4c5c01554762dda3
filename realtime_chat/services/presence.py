import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from realtime_chat.errors import PresenceStaleError
from realtime_chat.schemas.message import parse_timestamp
from realtime_chat.schemas.presence import PresenceRecord
from realtime_chat.services.protocols import ChatBackend


logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Dict[str, PresenceRecord]], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PresenceSubscription:
    """Handle for one polled set of users. ``cancel`` may be called any number of times."""

    def __init__(self, store: "PresenceStore", user_ids: Iterable[str], callback: SnapshotCallback, interval: float) -> None:
        self.user_ids = tuple(sorted(set(user_ids)))
        self.interval = interval
        self._store = store
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._store._forget(self)

    async def _deliver(self, snapshot: Dict[str, PresenceRecord]) -> None:
        if not self._active:
            return
        try:
            result = self._callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Presence callback failed for %s", ",".join(self.user_ids))


@dataclass
class _SelfReport:
    desired: Optional[bool] = None
    written: Optional[bool] = None
    handle: Optional[asyncio.TimerHandle] = None
    heartbeat: Optional[asyncio.Task] = None
    writes: Set[asyncio.Task] = field(default_factory=set)


class PresenceStore:
    """Process-wide online/offline view of users.

    Records come from three places only: batched polls, realtime presence
    broadcasts, and the debounced self-report of local users. A record that
    has not been refreshed within ``ttl_seconds`` reads as offline.
    """

    def __init__(
        self,
        backend: ChatBackend,
        ttl_seconds: float = 60.0,
        poll_interval_seconds: float = 30.0,
        heartbeat_seconds: float = 30.0,
        report_debounce_seconds: float = 2.0,
        now_func: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend
        self.ttl = timedelta(seconds=ttl_seconds)
        self.poll_interval = poll_interval_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.report_debounce_seconds = report_debounce_seconds
        self._now = now_func
        self._records: Dict[str, PresenceRecord] = {}
        self._subscriptions: Set[PresenceSubscription] = set()
        self._reports: Dict[str, _SelfReport] = {}

    # -- reads -------------------------------------------------------------

    def get(self, user_id: str) -> PresenceRecord:
        record = self._records.get(user_id)
        if record is None:
            return PresenceRecord(user_id=user_id)
        try:
            return record.ensure_fresh(self._now(), self.ttl)
        except PresenceStaleError as exc:
            logger.debug("Demoting %s to offline: %s", user_id, exc)
            demoted = record.demoted()
            self._records[user_id] = demoted
            return demoted

    def is_online(self, user_id: str) -> bool:
        return self.get(user_id).is_online

    def snapshot(self, user_ids: Iterable[str]) -> Dict[str, PresenceRecord]:
        return {user_id: self.get(user_id) for user_id in dict.fromkeys(user_ids)}

    # -- refresh paths -----------------------------------------------------

    def ingest(self, user_id: str, is_online: bool, last_seen: Optional[datetime] = None) -> PresenceRecord:
        """Apply a presence observation from a poll row or a realtime broadcast."""
        current = self._records.get(user_id)
        if current is not None and current.last_seen and last_seen and last_seen < current.last_seen:
            # older than what we already know
            return self.get(user_id)
        record = PresenceRecord(user_id=user_id, is_online=is_online, last_seen=last_seen, observed_at=self._now())
        self._records[user_id] = record
        return self.get(user_id)

    async def refresh(self, user_ids: Iterable[str]) -> Dict[str, PresenceRecord]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        try:
            rows = await self._backend.get_profiles_presence(ids)
        except Exception as exc:
            logger.warning("Presence poll failed for %d users: %s", len(ids), exc)
            return self.snapshot(ids)
        for row in rows:
            user_id = row.get("user_id") or row.get("userId")
            if not user_id:
                continue
            last_seen = row.get("last_seen", row.get("lastSeen"))
            self.ingest(
                str(user_id),
                bool(row.get("is_online", row.get("isOnline", False))),
                parse_timestamp(last_seen) if last_seen else None,
            )
        return self.snapshot(ids)

    # -- polling subscriptions ---------------------------------------------

    def subscribe(
        self, user_ids: Iterable[str], callback: SnapshotCallback, interval: Optional[float] = None
    ) -> PresenceSubscription:
        subscription = PresenceSubscription(self, user_ids, callback, interval or self.poll_interval)
        self._subscriptions.add(subscription)
        subscription._task = asyncio.create_task(self._poll(subscription))
        logger.debug("Started presence polling for %s", ",".join(subscription.user_ids))
        return subscription

    def unsubscribe(self, subscription: Optional[PresenceSubscription]) -> None:
        if subscription is not None:
            subscription.cancel()

    def _forget(self, subscription: PresenceSubscription) -> None:
        self._subscriptions.discard(subscription)

    async def _poll(self, subscription: PresenceSubscription) -> None:
        try:
            while subscription.active:
                snapshot = await self.refresh(subscription.user_ids)
                await subscription._deliver(snapshot)
                await asyncio.sleep(subscription.interval)
        except asyncio.CancelledError:
            return

    # -- self report -------------------------------------------------------

    def report_app_state(self, user_id: str, foreground: bool) -> None:
        """Record a foreground/background transition of a local user.

        The local record changes at once; the backend write waits for the
        debounce window so that flapping collapses into at most one write.
        """
        self.ingest(user_id, foreground, self._now())
        state = self._reports.setdefault(user_id, _SelfReport())
        state.desired = foreground
        if state.handle is not None:
            state.handle.cancel()
        loop = asyncio.get_running_loop()
        state.handle = loop.call_later(self.report_debounce_seconds, self._flush_report, user_id)

    def _flush_report(self, user_id: str) -> None:
        state = self._reports.get(user_id)
        if state is None:
            return
        state.handle = None
        if state.desired is None or state.desired == state.written:
            return
        task = asyncio.get_running_loop().create_task(self._write_own(user_id, state.desired))
        state.writes.add(task)
        task.add_done_callback(state.writes.discard)

    async def _write_own(self, user_id: str, is_online: bool) -> None:
        state = self._reports.setdefault(user_id, _SelfReport())
        try:
            await self._backend.set_own_presence(user_id, is_online)
        except Exception as exc:
            logger.warning("Own presence write failed for %s: %s", user_id, exc)
            return
        state.written = is_online
        if is_online and state.heartbeat is None:
            state.heartbeat = asyncio.create_task(self._heartbeat(user_id))
        elif not is_online and state.heartbeat is not None:
            state.heartbeat.cancel()
            state.heartbeat = None

    async def _heartbeat(self, user_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_seconds)
                try:
                    await self._backend.set_own_presence(user_id, True)
                    self.ingest(user_id, True, self._now())
                except Exception as exc:
                    logger.warning("Presence heartbeat failed for %s: %s", user_id, exc)
        except asyncio.CancelledError:
            return

    # -- teardown ----------------------------------------------------------

    async def close(self) -> None:
        tasks: List[asyncio.Task] = []
        for subscription in list(self._subscriptions):
            if subscription._task is not None:
                tasks.append(subscription._task)
            subscription.cancel()
        for state in self._reports.values():
            if state.handle is not None:
                state.handle.cancel()
                state.handle = None
            if state.heartbeat is not None:
                state.heartbeat.cancel()
                tasks.append(state.heartbeat)
                state.heartbeat = None
            for write in state.writes:
                write.cancel()
            tasks.extend(state.writes)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
