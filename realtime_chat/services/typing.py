import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from realtime_chat.schemas.events import TypingFrame


logger = logging.getLogger(__name__)

Broadcaster = Callable[[TypingFrame], Awaitable[None]]
TypingListener = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Signal:
    expires_at: datetime
    handle: Optional[asyncio.TimerHandle] = None
    # when the last "typing" frame went out; only used for our own signals
    broadcast_at: Optional[datetime] = None


class TypingTracker:
    """Debounced typing signals for one local user.

    Outgoing: the first ``start_typing`` in a window broadcasts, later calls
    only push ``expires_at`` forward, so sustained typing costs at most one
    frame per window. Incoming: remote signals live for one window after they
    are received; a missing clear frame is indistinguishable from an expired
    one.
    """

    def __init__(
        self,
        user_id: str,
        broadcast: Broadcaster,
        window_seconds: float = 3.0,
        now_func: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.user_id = user_id
        self.window = timedelta(seconds=window_seconds)
        self._broadcast = broadcast
        self._now = now_func
        self._local: Dict[str, _Signal] = {}
        self._remote: Dict[Tuple[str, str], _Signal] = {}
        self._listeners: List[TypingListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # -- outgoing ----------------------------------------------------------

    async def start_typing(self, conversation_id: str) -> bool:
        """Mark the local user as typing. Returns True when a frame was broadcast."""
        if self._closed:
            return False
        now = self._now()
        signal = self._local.get(conversation_id)
        if signal is None:
            signal = _Signal(expires_at=now + self.window)
            self._local[conversation_id] = signal
        signal.expires_at = now + self.window
        self._arm(signal, self._expire_local, conversation_id)

        if signal.broadcast_at is not None and now - signal.broadcast_at < self.window:
            return False
        signal.broadcast_at = now
        await self._send(conversation_id, True, signal.expires_at)
        return True

    async def stop_typing(self, conversation_id: str) -> bool:
        """Cancel the local signal. Returns True when a clear frame was broadcast."""
        signal = self._local.pop(conversation_id, None)
        if signal is None:
            return False
        if signal.handle is not None:
            signal.handle.cancel()
        if signal.broadcast_at is None or self._closed:
            return False
        await self._send(conversation_id, False, None)
        return True

    def is_local_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._local

    def _expire_local(self, conversation_id: str) -> None:
        signal = self._local.pop(conversation_id, None)
        if signal is None or signal.broadcast_at is None or self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._send(conversation_id, False, None))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, conversation_id: str, is_typing: bool, expires_at: Optional[datetime]) -> None:
        frame = TypingFrame(
            conversation_id=conversation_id,
            user_id=self.user_id,
            is_typing=is_typing,
            expires_at=expires_at,
        )
        try:
            await self._broadcast(frame)
        except Exception as exc:
            logger.warning("Typing broadcast failed for %s: %s", conversation_id, exc)

    # -- incoming ----------------------------------------------------------

    def observe(self, frame: TypingFrame) -> None:
        if self._closed or frame.user_id == self.user_id:
            return
        key = (frame.conversation_id, frame.user_id)
        existing = self._remote.get(key)
        if not frame.is_typing:
            if existing is not None:
                self._drop_remote(key)
            return
        # expiry counts from local receipt so clock skew between devices
        # cannot make a fresh signal look expired
        expires_at = self._now() + self.window
        if existing is None:
            existing = _Signal(expires_at=expires_at)
            self._remote[key] = existing
            self._arm(existing, self._expire_remote, key)
            self._notify(frame.conversation_id)
        else:
            existing.expires_at = expires_at
            self._arm(existing, self._expire_remote, key)

    def is_typing(self, conversation_id: str, exclude: Optional[str] = None) -> bool:
        return bool(self.typing_users(conversation_id, exclude))

    def typing_users(self, conversation_id: str, exclude: Optional[str] = None) -> List[str]:
        now = self._now()
        users = []
        for (conv_id, user_id), signal in list(self._remote.items()):
            if conv_id != conversation_id or user_id == exclude:
                continue
            if signal.expires_at <= now:
                continue
            users.append(user_id)
        return users

    def _expire_remote(self, key: Tuple[str, str]) -> None:
        signal = self._remote.get(key)
        if signal is None:
            return
        if signal.expires_at > self._now():
            # extended after the timer was armed
            self._arm(signal, self._expire_remote, key)
            return
        self._drop_remote(key)

    def _drop_remote(self, key: Tuple[str, str]) -> None:
        signal = self._remote.pop(key, None)
        if signal is None:
            return
        if signal.handle is not None:
            signal.handle.cancel()
        self._notify(key[0])

    # -- listeners / timers ------------------------------------------------

    def add_listener(self, listener: TypingListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    def _notify(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id)
            except Exception:
                logger.exception("Typing listener failed for %s", conversation_id)

    def _arm(self, signal: _Signal, callback, key) -> None:
        if signal.handle is not None:
            signal.handle.cancel()
        delay = max(0.0, (signal.expires_at - self._now()).total_seconds())
        signal.handle = asyncio.get_running_loop().call_later(delay, callback, key)

    async def close(self) -> None:
        self._closed = True
        for signal in list(self._local.values()) + list(self._remote.values()):
            if signal.handle is not None:
                signal.handle.cancel()
        self._local.clear()
        self._remote.clear()
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
