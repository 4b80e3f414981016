from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from tripbook.container import Container
from tripbook.models import DeviceTokenRegisterRequest, NotificationRecord
from tripbook.routers.common import get_container

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return container.notifications.list_for_user(user_id=user_id, unread_only=unread_only)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    container.notifications.register_device_token(user_id=payload.user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    updated = container.notifications.mark_read(user_id=user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
