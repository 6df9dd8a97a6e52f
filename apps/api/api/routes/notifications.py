from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict

from apps.api.dependencies.auth import CurrentUser
from apps.api.dependencies.errors import http_error
from apps.api.dependencies.helpdesk import HelpdeskServiceDep
from apps.api.helpdesk import HelpdeskError, Notification

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    message: str
    is_read: bool
    ticket_id: str | None
    created_at: datetime


class UnreadCountResponse(BaseModel):
    unread: int


class MarkAllReadResponse(BaseModel):
    updated: int


def to_notification_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse.model_validate(notification)


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    service: HelpdeskServiceDep,
    user: CurrentUser,
    limit: int | None = Query(default=None, ge=1, le=200),
) -> list[NotificationResponse]:
    try:
        notifications = await service.list_notifications(user, limit=limit)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return [to_notification_response(notification) for notification in notifications]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(service: HelpdeskServiceDep, user: CurrentUser) -> UnreadCountResponse:
    try:
        count = await service.unread_count(user)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return UnreadCountResponse(unread=count)


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(service: HelpdeskServiceDep, user: CurrentUser) -> MarkAllReadResponse:
    try:
        updated = await service.mark_all_read(user)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return MarkAllReadResponse(updated=updated)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: str, service: HelpdeskServiceDep, user: CurrentUser) -> NotificationResponse:
    try:
        notification = await service.mark_notification_read(user, notification_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return to_notification_response(notification)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(notification_id: str, service: HelpdeskServiceDep, user: CurrentUser) -> None:
    try:
        await service.delete_notification(user, notification_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
