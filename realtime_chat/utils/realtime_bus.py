import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import redis.asyncio as redis


logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def presence_key(user_id: str) -> str:
    return f"presence:{user_id}"


def notification_claim_key(subject_id: str, recipient_id: str) -> str:
    return f"notification:{subject_id}:{recipient_id}"


class BusSubscription:
    """A running pub/sub reader for one channel. ``cancel`` is idempotent."""

    def __init__(self, pubsub, channel: str, on_message: MessageHandler) -> None:
        self._pubsub = pubsub
        self.channel = channel
        self._on_message = on_message
        self._running = True
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "BusSubscription":
        self._task = asyncio.create_task(self.run())
        return self

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Reading %s failed: %s", self.channel, exc)
                await asyncio.sleep(0.5)
                continue
            if not msg or msg.get("type") != "message":
                continue
            data = msg.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                await self._on_message(data)
            except Exception:
                logger.exception("Handler for %s failed", self.channel)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except Exception as exc:
            logger.warning("Closing subscription to %s failed: %s", self.channel, exc)


class RedisBus:
    """Redis pub/sub fan-out plus TTL presence keys."""

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: MessageHandler) -> BusSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return BusSubscription(pubsub, channel, on_message).start()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(presence_key(user_id), "online", ex=ttl_seconds)

    async def clear_presence(self, user_id: str) -> None:
        await self._redis.delete(presence_key(user_id))

    async def online_users(self, user_ids: List[str]) -> List[str]:
        if not user_ids:
            return []
        values = await self._redis.mget([presence_key(u) for u in user_ids])
        return [u for u, v in zip(user_ids, values) if v is not None]

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """SET NX: True only for the first caller while the key lives."""
        return bool(await self._redis.set(key, "1", nx=True, ex=ttl_seconds))

    async def close(self) -> None:
        await self._redis.aclose()
