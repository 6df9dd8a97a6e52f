"""SQLModel table definitions for the Deskline data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class ProfileTable(SQLModel, table=True):
    """User profiles created on first authenticated contact."""

    __tablename__ = "profiles"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    email: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    role: str = Field(default="USER", sa_column=Column(String(20), nullable=False, index=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Support tickets filed by requesters."""

    __tablename__ = "tickets"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_number: int = Field(sa_column=Column(Integer, nullable=False, unique=True))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    requester_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    requester_name: str = Field(default="", sa_column=Column(String(255), nullable=False))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False, index=True))
    category: str = Field(sa_column=Column(String(100), nullable=False))
    attachments: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class CommentTable(SQLModel, table=True):
    """Append-only conversation entries attached to a ticket."""

    __tablename__ = "comments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    author_id: str = Field(sa_column=Column(String(36), nullable=False))
    body: str = Field(sa_column=Column(Text, nullable=False))
    source: str = Field(default="INTERACTIVE", sa_column=Column(String(30), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class AuditLogTable(SQLModel, table=True):
    """Immutable trail of ticket mutations."""

    __tablename__ = "audit_logs"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    actor_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    action: str = Field(sa_column=Column(String(30), nullable=False))
    detail: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class NotificationTable(SQLModel, table=True):
    """In-app notifications addressed to a single recipient."""

    __tablename__ = "notifications"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    user_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    is_read: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    ticket_id: str | None = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=True),
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
