import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from realtime_chat.config import Settings
from realtime_chat.errors import ChatError
from realtime_chat.services.chat_session import ChatSession
from realtime_chat.services.conversation_cache import ConversationCache
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.services.presence import PresenceStore
from realtime_chat.services.protocols import ChatBackend
from realtime_chat.utils.dependencies import (
    get_backend,
    get_bridge,
    get_connections,
    get_conversations,
    get_presence_store,
    get_settings_dep,
)
from realtime_chat.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


async def _push_snapshots(websocket: WebSocket, session: ChatSession, changed: asyncio.Event) -> None:
    # coalesces bursts of changes into one frame
    while True:
        await changed.wait()
        changed.clear()
        await websocket.send_text(json.dumps({"type": "snapshot", **session.snapshot()}))


async def _handle_frame(session: ChatSession, msg: Dict[str, Any]) -> Dict[str, Any] | None:
    kind = msg.get("type")
    if kind == "send":
        message = await session.send(msg.get("content", ""), msg.get("message_type", "text"))
        return {"type": "sent", "message": message.to_view() if message else None}
    if kind == "retry":
        message = await session.retry(str(msg.get("message_id")))
        return {"type": "retried", "message": message.to_view() if message else None}
    if kind == "delete":
        message = await session.delete(str(msg.get("message_id")))
        return {"type": "deleted", "message_id": message.id if message else None}
    if kind == "read":
        return {"type": "read", "marked": await session.mark_read(), "unread": session.unread_count()}
    if kind == "typing":
        if msg.get("is_typing", True):
            await session.start_typing()
        else:
            await session.stop_typing()
        return None
    if kind == "app_state":
        await session.set_app_state(bool(msg.get("foreground", True)))
        return None
    if kind == "load_older":
        loaded = await session.load_older()
        return {"type": "history", "loaded": loaded, "has_more": session.has_more_history}
    if kind == "reconnect":
        await session.reconnect()
        return None
    return {"type": "error", "detail": f"unknown frame type {kind!r}"}


@router.websocket("/ws/{conversation_id}/{user_id}")
async def chat_socket(
    websocket: WebSocket,
    conversation_id: str,
    user_id: str,
    backend: ChatBackend = Depends(get_backend),
    presence: PresenceStore = Depends(get_presence_store),
    bridge: NotificationBridge = Depends(get_bridge),
    conversations: ConversationCache = Depends(get_conversations),
    manager: ConnectionManager = Depends(get_connections),
    settings: Settings = Depends(get_settings_dep),
):
    await manager.connect(user_id, websocket)
    try:
        participants = await conversations.participants(conversation_id)
    except LookupError:
        manager.disconnect(user_id, websocket)
        await websocket.close(code=4404)
        return
    if user_id not in participants:
        manager.disconnect(user_id, websocket)
        await websocket.close(code=4403)
        return

    session = ChatSession(
        conversation_id,
        user_id,
        backend,
        presence,
        bridge,
        conversations=conversations,
        reconcile_window_seconds=settings.reconcile_window_seconds,
        typing_window_seconds=settings.typing_window_seconds,
        max_message_length=settings.max_message_length,
        page_size=settings.history_page_size,
    )
    await session.open()

    changed = asyncio.Event()
    changed.set()
    session.add_listener(lambda _s: changed.set())
    pusher = asyncio.create_task(_push_snapshots(websocket, session, changed))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "detail": "invalid JSON"}))
                continue
            try:
                reply = await _handle_frame(session, msg)
            except (ChatError, LookupError) as exc:
                reply = {"type": "error", "detail": str(exc)}
            if reply is not None:
                await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        logger.debug("Socket for %s in %s disconnected", user_id, conversation_id)
    finally:
        pusher.cancel()
        await asyncio.gather(pusher, return_exceptions=True)
        await session.close()
        manager.disconnect(user_id, websocket)
        if not manager.is_connected(user_id):
            presence.report_app_state(user_id, False)
