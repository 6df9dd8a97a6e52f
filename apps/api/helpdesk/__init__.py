"""Ticket lifecycle and notification synchronisation engine."""

from .audit import AuditRecorder
from .email import EmailAlertSender, EmailDeliveryError
from .errors import (
    AccountDeactivated,
    AuditWriteError,
    AuthorizationError,
    HelpdeskError,
    InvalidPriority,
    InvalidStatus,
    MutationFailedError,
    NotFoundError,
    NotificationNotFoundError,
    PersistenceError,
    TicketNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .identity import BootstrapPolicy, IdentityResolver
from .insights import InsightsError, TicketInsights, TicketInsightsClient, TriageSuggestion
from .models import (
    AuditAction,
    AuditLogEntry,
    Comment,
    CommentSource,
    Notification,
    Role,
    Ticket,
    TicketPriority,
    TicketStatus,
    User,
)
from .notifications import FanOutError, NotificationFanOut, StatusChanged, TicketCommented, TicketCreated
from .service import CommentOutcome, HelpdeskService, TicketOutcome, TicketStats
from .state import TicketStateMachine, Transition
from .sync import ClientSession, DebouncedRefetch, QueryCache, SyncAction, SyncBridge

__all__ = [
    "AccountDeactivated",
    "AuditAction",
    "AuditLogEntry",
    "AuditRecorder",
    "AuditWriteError",
    "AuthorizationError",
    "BootstrapPolicy",
    "ClientSession",
    "Comment",
    "CommentOutcome",
    "CommentSource",
    "DebouncedRefetch",
    "EmailAlertSender",
    "EmailDeliveryError",
    "FanOutError",
    "HelpdeskError",
    "HelpdeskService",
    "IdentityResolver",
    "InsightsError",
    "InvalidPriority",
    "InvalidStatus",
    "MutationFailedError",
    "NotFoundError",
    "Notification",
    "NotificationFanOut",
    "NotificationNotFoundError",
    "PersistenceError",
    "QueryCache",
    "Role",
    "StatusChanged",
    "SyncAction",
    "SyncBridge",
    "Ticket",
    "TicketCommented",
    "TicketCreated",
    "TicketInsights",
    "TicketInsightsClient",
    "TicketNotFoundError",
    "TicketOutcome",
    "TicketPriority",
    "TicketStateMachine",
    "TicketStats",
    "TicketStatus",
    "Transition",
    "TriageSuggestion",
    "User",
    "UserNotFoundError",
    "ValidationError",
]
