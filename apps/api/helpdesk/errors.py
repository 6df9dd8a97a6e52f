"""Error taxonomy for the help-desk engine."""

from __future__ import annotations


class HelpdeskError(RuntimeError):
    """Base error for help-desk engine issues."""


class ValidationError(HelpdeskError):
    """Raised when a request is malformed; nothing has been written."""


class InvalidStatus(ValidationError):
    """Raised for a status value outside the declared lifecycle states."""


class InvalidPriority(ValidationError):
    """Raised for a priority value outside the declared levels."""


class AuthorizationError(HelpdeskError, PermissionError):
    """Raised when the actor may not perform the requested action."""


class NotFoundError(HelpdeskError):
    """Raised when a referenced record could not be located."""


class TicketNotFoundError(NotFoundError):
    """Raised when an operation targets a non-existent ticket."""


class UserNotFoundError(NotFoundError):
    """Raised when an operation targets a non-existent user profile."""


class NotificationNotFoundError(NotFoundError):
    """Raised when a notification is missing or addressed to someone else."""


class AccountDeactivated(HelpdeskError):
    """Raised when a deactivated account authenticates; the caller must sign it out."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Account {user_id} has been deactivated")
        self.user_id = user_id


class PersistenceError(HelpdeskError):
    """A store call failed.

    ``mutation_applied`` tells callers whether the primary write already landed,
    so a UI can decide between a plain retry and a destructive-retry warning.
    """

    mutation_applied: bool = False

    def __init__(self, message: str, *, mutation_applied: bool | None = None) -> None:
        super().__init__(message)
        if mutation_applied is not None:
            self.mutation_applied = mutation_applied


class MutationFailedError(PersistenceError):
    """The primary write failed; no audit entry or notification was attempted."""

    mutation_applied = False


class AuditWriteError(PersistenceError):
    """The primary write succeeded but its audit entry could not be persisted."""

    mutation_applied = True
