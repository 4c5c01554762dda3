import asyncio
import logging
from typing import Any, Dict, List, Optional

from pyfcm import FCMNotification

from realtime_chat.errors import NotificationDeliveryError


logger = logging.getLogger(__name__)


class NoopPush:
    """Used when no FCM credentials are configured."""

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> List[str]:
        raise NotificationDeliveryError("push delivery is not configured")


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> List[str]:
        """Send to every token; returns the tokens that were rejected.

        Raises ``NotificationDeliveryError`` when no token accepted the message.
        """
        if not tokens:
            raise NotificationDeliveryError("recipient has no registered devices")
        payload = {k: str(v) for k, v in (data or {}).items()}
        failed: List[str] = []
        for token in tokens:
            try:
                # pyfcm is sync
                await asyncio.to_thread(
                    self._client.notify,
                    fcm_token=token,
                    notification_title=title,
                    notification_body=body,
                    data_payload=payload,
                )
            except Exception as exc:
                logger.warning("FCM rejected token %s...: %s", token[:12], exc)
                failed.append(token)
        if len(failed) == len(tokens):
            raise NotificationDeliveryError(f"all {len(tokens)} push tokens failed")
        return failed


def build_push(service_account_file: Optional[str], project_id: Optional[str]):
    if not service_account_file or not project_id:
        logger.info("FCM credentials not set; push notifications disabled")
        return NoopPush()
    return FcmPush(service_account_file, project_id)
