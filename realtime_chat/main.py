import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from realtime_chat.config import get_settings
from realtime_chat.database.connection import close_mongo_connection, connect_to_mongo
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.device_repository import DeviceRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.repositories.notification_repository import NotificationRepository
from realtime_chat.repositories.profile_repository import ProfileRepository
from realtime_chat.routers.chat import router as chat_router
from realtime_chat.routers.notifications import router as notifications_router
from realtime_chat.routers.presence import router as presence_router
from realtime_chat.services.chat_service import ChatService
from realtime_chat.services.conversation_cache import ConversationCache
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.services.presence import PresenceStore
from realtime_chat.utils.logging_config import setup_logging
from realtime_chat.utils.notifications import build_push
from realtime_chat.utils.realtime_bus import RedisBus
from realtime_chat.utils.websocket_manager import ConnectionManager, local_alert_sender


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    db = await connect_to_mongo()
    repos = (
        MessageRepository(db),
        ConversationRepository(db),
        ProfileRepository(db),
        NotificationRepository(db),
        DeviceRepository(db),
    )
    for repo in repos:
        await repo.ensure_indexes()

    bus = RedisBus(settings.redis_url)
    backend = ChatService(
        *repos,
        bus=bus,
        push=build_push(settings.fcm_service_account_file, settings.fcm_project_id),
        presence_ttl_seconds=int(settings.presence_ttl_seconds),
        notification_claim_ttl_seconds=settings.notification_claim_ttl_seconds,
    )
    presence = PresenceStore(
        backend,
        ttl_seconds=settings.presence_ttl_seconds,
        poll_interval_seconds=settings.presence_poll_interval_seconds,
        heartbeat_seconds=settings.presence_heartbeat_seconds,
        report_debounce_seconds=settings.presence_report_debounce_seconds,
    )
    connections = ConnectionManager()

    app.state.settings = settings
    app.state.backend = backend
    app.state.presence = presence
    app.state.connections = connections
    app.state.conversations = ConversationCache(backend)
    app.state.bridge = NotificationBridge(
        backend,
        presence,
        local_alert=local_alert_sender(connections),
        default_timezone=settings.default_timezone,
    )
    logger.info("Realtime chat started")
    try:
        yield
    finally:
        await presence.close()
        await bus.close()
        await close_mongo_connection()
        logger.info("Realtime chat stopped")


def include_routers(app: FastAPI) -> FastAPI:
    app.include_router(chat_router)
    app.include_router(presence_router)
    app.include_router(notifications_router)
    return app


app = include_routers(FastAPI(title="Realtime Chat", lifespan=lifespan))


@app.get("/")
async def root():
    return {"status": "ok"}
