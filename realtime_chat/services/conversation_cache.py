import asyncio
import logging
from typing import Any, Dict, List

from realtime_chat.services.protocols import ChatBackend


logger = logging.getLogger(__name__)


class ConversationCache:
    """Read-through cache of conversation rows, keyed by id."""

    def __init__(self, backend: ChatBackend) -> None:
        self._backend = backend
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._loading: Dict[str, asyncio.Future] = {}

    async def get(self, conversation_id: str) -> Dict[str, Any]:
        cached = self._rows.get(conversation_id)
        if cached is not None:
            return cached
        pending = self._loading.get(conversation_id)
        if pending is not None:
            return await pending
        future = asyncio.ensure_future(self._backend.get_conversation(conversation_id))
        self._loading[conversation_id] = future
        try:
            row = await future
        finally:
            self._loading.pop(conversation_id, None)
        self._rows[conversation_id] = row
        return row

    async def participants(self, conversation_id: str) -> List[str]:
        row = await self.get(conversation_id)
        return [str(p) for p in row.get("participants", [])]

    def invalidate(self, conversation_id: str | None = None) -> None:
        if conversation_id is None:
            self._rows.clear()
        else:
            self._rows.pop(conversation_id, None)
