from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Header, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from apps.api.dependencies.auth import AdminUser, CurrentUser
from apps.api.dependencies.errors import http_error
from apps.api.dependencies.helpdesk import HelpdeskServiceDep
from apps.api.helpdesk import (
    AuditAction,
    AuditLogEntry,
    Comment,
    CommentOutcome,
    CommentSource,
    HelpdeskError,
    Ticket,
    TicketOutcome,
    TicketPriority,
    TicketStatus,
)

router = APIRouter(prefix="/tickets", tags=["tickets"])
activity_router = APIRouter(prefix="/activity", tags=["tickets"])

IDEMPOTENCY_HEADER = "Idempotency-Key"


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM
    category: str | None = Field(default=None, max_length=100)
    attachments: list[str] = Field(default_factory=list)


class TicketUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, min_length=1)
    priority: TicketPriority | None = None
    category: str | None = Field(default=None, max_length=100)
    attachments: list[str] | None = None

    def ensure_payload(self) -> None:
        if not self.model_dump(exclude_none=True):
            raise HTTPException(status_code=400, detail="No fields provided for update")


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus


class CommentCreateRequest(BaseModel):
    body: str = Field(..., min_length=1)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_number: int
    title: str
    description: str
    requester_id: str
    requester_name: str
    priority: TicketPriority
    status: TicketStatus
    category: str
    attachments: list[str]
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None


class TicketMutationResponse(BaseModel):
    ticket: TicketResponse
    notified: int
    fan_out_complete: bool


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str
    body: str
    source: CommentSource
    created_at: datetime


class CommentMutationResponse(BaseModel):
    comment: CommentResponse
    notified: int
    fan_out_complete: bool


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    actor_id: str | None
    action: AuditAction
    detail: str
    created_at: datetime


class TriageRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)


class TriageSuggestionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    priority: TicketPriority
    category: str
    summary: str


class TicketInsightsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    summary: str
    sentiment_score: float
    urgency: TicketPriority
    suggested_response: str


class TicketStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    open: int
    in_progress: int
    resolved: int
    critical: int


def to_ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def to_comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def to_audit_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse.model_validate(entry)


def _mutation(outcome: TicketOutcome) -> TicketMutationResponse:
    return TicketMutationResponse(
        ticket=to_ticket_response(outcome.ticket),
        notified=len(outcome.notifications),
        fan_out_complete=outcome.fan_out_complete,
    )


def _comment_mutation(outcome: CommentOutcome) -> CommentMutationResponse:
    return CommentMutationResponse(
        comment=to_comment_response(outcome.comment),
        notified=len(outcome.notifications),
        fan_out_complete=outcome.fan_out_complete,
    )


@router.post("", response_model=TicketMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: HelpdeskServiceDep,
    user: CurrentUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> TicketMutationResponse:
    try:
        outcome = await service.create_ticket(
            user,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            category=payload.category,
            attachments=payload.attachments,
            request_id=idempotency_key,
        )
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return _mutation(outcome)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: HelpdeskServiceDep,
    user: CurrentUser,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
) -> list[TicketResponse]:
    try:
        tickets = await service.list_visible_tickets(user, status=status_filter)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return [to_ticket_response(ticket) for ticket in tickets]


@router.get("/stats", response_model=TicketStatsResponse)
async def ticket_stats(service: HelpdeskServiceDep, user: CurrentUser) -> TicketStatsResponse:
    try:
        stats = await service.ticket_stats(user)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return TicketStatsResponse.model_validate(stats)


@router.post("/triage", response_model=TriageSuggestionResponse | None)
async def suggest_triage(
    payload: TriageRequest, service: HelpdeskServiceDep, user: CurrentUser
) -> TriageSuggestionResponse | None:
    """Suggest priority and category while a ticket is being written; ``null`` when unavailable."""

    try:
        suggestion = await service.suggest_triage(user, title=payload.title, description=payload.description)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return TriageSuggestionResponse.model_validate(suggestion) if suggestion is not None else None


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: HelpdeskServiceDep, user: CurrentUser) -> TicketResponse:
    try:
        ticket = await service.get_ticket(user, ticket_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return to_ticket_response(ticket)


@router.patch("/{ticket_id}", response_model=TicketMutationResponse)
async def edit_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    service: HelpdeskServiceDep,
    user: CurrentUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> TicketMutationResponse:
    payload.ensure_payload()
    try:
        outcome = await service.edit_ticket(
            user,
            ticket_id,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            category=payload.category,
            attachments=payload.attachments,
            request_id=idempotency_key,
        )
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return _mutation(outcome)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(ticket_id: str, service: HelpdeskServiceDep, user: CurrentUser) -> None:
    try:
        await service.delete_ticket(user, ticket_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/status", response_model=TicketMutationResponse)
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: HelpdeskServiceDep,
    user: CurrentUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> TicketMutationResponse:
    try:
        outcome = await service.transition_status(user, ticket_id, payload.status, request_id=idempotency_key)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return _mutation(outcome)


@router.get("/{ticket_id}/comments", response_model=list[CommentResponse])
async def list_comments(ticket_id: str, service: HelpdeskServiceDep, user: CurrentUser) -> list[CommentResponse]:
    try:
        comments = await service.list_comments(user, ticket_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return [to_comment_response(comment) for comment in comments]


@router.post(
    "/{ticket_id}/comments",
    response_model=CommentMutationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: HelpdeskServiceDep,
    user: CurrentUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> CommentMutationResponse:
    try:
        outcome = await service.add_comment(user, ticket_id, payload.body, request_id=idempotency_key)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return _comment_mutation(outcome)


@router.get("/{ticket_id}/history", response_model=list[AuditEntryResponse])
async def ticket_history(
    ticket_id: str, service: HelpdeskServiceDep, user: CurrentUser
) -> list[AuditEntryResponse]:
    try:
        entries = await service.ticket_history(user, ticket_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return [to_audit_response(entry) for entry in entries]


@activity_router.get("", response_model=list[AuditEntryResponse])
async def recent_activity(
    service: HelpdeskServiceDep,
    user: AdminUser,
    limit: int = Query(default=8, ge=1, le=100),
) -> list[AuditEntryResponse]:
    try:
        entries = await service.recent_activity(user, limit)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return [to_audit_response(entry) for entry in entries]


@router.post(
    "/{ticket_id}/external-replies",
    response_model=CommentMutationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_external_reply(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: HelpdeskServiceDep,
    user: AdminUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> CommentMutationResponse:
    """Record a reply that reached the desk by e-mail on behalf of the requester."""

    try:
        outcome = await service.add_external_reply(user, ticket_id, payload.body, request_id=idempotency_key)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return _comment_mutation(outcome)


@router.get("/{ticket_id}/insights", response_model=TicketInsightsResponse | None)
async def ticket_insights(
    ticket_id: str, service: HelpdeskServiceDep, user: AdminUser
) -> TicketInsightsResponse | None:
    try:
        insights = await service.ticket_insights(user, ticket_id)
    except HelpdeskError as exc:
        raise http_error(exc) from exc
    return TicketInsightsResponse.model_validate(insights) if insights is not None else None
