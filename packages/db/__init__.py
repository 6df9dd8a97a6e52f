"""Database models and utilities."""

from .models import (
    AuditLogTable,
    CommentTable,
    NotificationTable,
    ProfileTable,
    TicketTable,
)

__all__ = [
    "AuditLogTable",
    "CommentTable",
    "NotificationTable",
    "ProfileTable",
    "TicketTable",
]
