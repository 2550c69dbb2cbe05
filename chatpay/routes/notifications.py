"""Notification routes."""

import uuid

from fastapi import APIRouter, Query

from chatpay.dependencies import CurrentUserId, ServicesDep
from chatpay.schemas import MarkAllReadResponse, NotificationListResponse, NotificationResponse, Pagination

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    user_id: CurrentUserId,
    services: ServicesDep,
    unread_only: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> NotificationListResponse:
    found, total = await services.notifications.list_for_user(
        user_id, unread_only=unread_only, page=page, limit=limit,
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(notification) for notification in found],
        pagination=Pagination.of(page, limit, total),
    )


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(user_id: CurrentUserId, services: ServicesDep) -> MarkAllReadResponse:
    updated = await services.notifications.mark_all_read(user_id)
    return MarkAllReadResponse(updated_count=updated)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: uuid.UUID, user_id: CurrentUserId, services: ServicesDep) -> NotificationResponse:
    notification = await services.notifications.mark_read(user_id, notification_id)
    return NotificationResponse.model_validate(notification)
