from fastapi.requests import HTTPConnection

from realtime_chat.config import Settings
from realtime_chat.services.conversation_cache import ConversationCache
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.services.presence import PresenceStore
from realtime_chat.services.protocols import ChatBackend
from realtime_chat.utils.websocket_manager import ConnectionManager


# Singletons are built once in the app lifespan and stored on app.state.

def get_settings_dep(conn: HTTPConnection) -> Settings:
    return conn.app.state.settings


def get_backend(conn: HTTPConnection) -> ChatBackend:
    return conn.app.state.backend


def get_presence_store(conn: HTTPConnection) -> PresenceStore:
    return conn.app.state.presence


def get_bridge(conn: HTTPConnection) -> NotificationBridge:
    return conn.app.state.bridge


def get_conversations(conn: HTTPConnection) -> ConversationCache:
    return conn.app.state.conversations


def get_connections(conn: HTTPConnection) -> ConnectionManager:
    return conn.app.state.connections
