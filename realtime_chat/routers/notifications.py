from fastapi import APIRouter, Depends, HTTPException

from realtime_chat.errors import InvalidTransitionError
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.utils.dependencies import get_bridge


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/{user_id}")
async def list_notifications(user_id: str, bridge: NotificationBridge = Depends(get_bridge)):
    records = bridge.records(user_id)
    return {"notifications": [r.model_dump(mode="json") for r in records]}


@router.get("/{user_id}/badge")
async def badge(user_id: str, bridge: NotificationBridge = Depends(get_bridge)):
    return {"user_id": user_id, "unread": bridge.unread_count(user_id)}


@router.post("/{notification_id}/opened")
async def mark_opened(notification_id: str, bridge: NotificationBridge = Depends(get_bridge)):
    try:
        record = bridge.mark_opened(notification_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if record is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return record.model_dump(mode="json")


@router.post("/{notification_id}/delivered")
async def mark_delivered(notification_id: str, bridge: NotificationBridge = Depends(get_bridge)):
    try:
        record = bridge.mark_delivered(notification_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if record is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return record.model_dump(mode="json")
