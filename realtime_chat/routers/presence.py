from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from realtime_chat.services.presence import PresenceStore
from realtime_chat.utils.dependencies import get_presence_store


router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("")
async def presence_many(user_ids: str = Query(..., description="Comma separated user ids"), store: PresenceStore = Depends(get_presence_store)) -> Dict[str, Dict]:
    ids = [u.strip() for u in user_ids.split(",") if u.strip()]
    if not ids:
        raise HTTPException(status_code=422, detail="user_ids must not be empty")
    snapshot = await store.refresh(ids)
    return {user_id: record.to_view() for user_id, record in snapshot.items()}


@router.get("/{user_id}")
async def presence(user_id: str, store: PresenceStore = Depends(get_presence_store)):
    """Online status of one user, refreshed from the backend before answering."""
    record = (await store.refresh([user_id]))[user_id]
    return {"user_id": user_id, "online": record.is_online, "last_seen": record.to_view()["lastSeen"]}
