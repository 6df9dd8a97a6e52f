from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict

from apps.api.dependencies.auth import AdminUser, CurrentUser
from apps.api.dependencies.errors import http_error
from apps.api.dependencies.helpdesk import HelpdeskServiceDep
from apps.api.helpdesk import HelpdeskError, Role, User

router = APIRouter(prefix="/users", tags=["users"])
me_router = APIRouter(prefix="/me", tags=["users"])


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: Role
    is_active: bool
    created_at: datetime | None


class RoleChangeRequest(BaseModel):
    role: Role


class ActiveChangeRequest(BaseModel):
    active: bool


def to_user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


@me_router.get("", response_model=UserResponse, summary="Resolved profile of the caller")
async def read_me(user: CurrentUser) -> UserResponse:
    return to_user_response(user)


@router.get("", response_model=list[UserResponse])
async def list_users(service: HelpdeskServiceDep, user: AdminUser) -> list[UserResponse]:
    try:
        users = await service.list_users(user)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return [to_user_response(item) for item in users]


@router.post("/{user_id}/role", response_model=UserResponse)
async def set_role(
    user_id: str, payload: RoleChangeRequest, service: HelpdeskServiceDep, user: AdminUser
) -> UserResponse:
    try:
        updated = await service.set_role(user, user_id, payload.role)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return to_user_response(updated)


@router.post("/{user_id}/active", response_model=UserResponse)
async def set_active(
    user_id: str, payload: ActiveChangeRequest, service: HelpdeskServiceDep, user: AdminUser
) -> UserResponse:
    try:
        updated = await service.set_active(user, user_id, payload.active)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return to_user_response(updated)
