from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable

from apps.api.metrics import MetricsRegistry, metrics_registry
from apps.api.metrics.definitions import BOOTSTRAP_PROMOTIONS, PROFILES_CREATED
from apps.api.services.changes import Entity
from apps.api.services.store import DuplicateKeyError, StoreAdapter, StoreError

from .errors import AccountDeactivated, PersistenceError, ValidationError
from .models import Role, User, row_to_user, user_to_row

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BootstrapPolicy:
    """Accounts that are promoted to ADMIN on contact.

    An email qualifies when it is in ``admin_emails`` or its local part starts
    with one of ``admin_prefixes``. Matching is case-insensitive.
    """

    admin_emails: frozenset[str] = frozenset()
    admin_prefixes: tuple[str, ...] = ()

    @classmethod
    def from_values(cls, emails: Iterable[str], prefixes: Iterable[str]) -> "BootstrapPolicy":
        return cls(
            admin_emails=frozenset(email.strip().lower() for email in emails if email.strip()),
            admin_prefixes=tuple(prefix.strip().lower() for prefix in prefixes if prefix.strip()),
        )

    def matches(self, email: str) -> bool:
        normalized = email.strip().lower()
        if not normalized:
            return False
        if normalized in self.admin_emails:
            return True
        return normalized.startswith(self.admin_prefixes) if self.admin_prefixes else False


def default_display_name(email: str) -> str:
    return email.split("@", 1)[0]


class IdentityResolver:
    """Turn an authenticated session into a usable profile.

    Missing profiles are created on first contact with role USER. The bootstrap
    rule may then promote the profile to ADMIN; it never demotes. Deactivated
    profiles raise :class:`AccountDeactivated` before any promotion is applied.
    """

    def __init__(
        self,
        store: StoreAdapter,
        policy: BootstrapPolicy | None = None,
        *,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or BootstrapPolicy()
        self._metrics = registry or metrics_registry

    async def resolve(self, session_user_id: str, session_email: str, display_name: str | None = None) -> User:
        if not session_user_id:
            raise ValidationError("Session is missing a user id")
        user = await self._load(session_user_id)
        if user is None:
            user = await self._create(session_user_id, session_email, display_name)
        if not user.is_active:
            logger.info("Rejected sign-in for deactivated account %s", user.id)
            raise AccountDeactivated(user.id)
        email = session_email or user.email
        if user.role is not Role.ADMIN and self._policy.matches(email):
            user = await self._promote(user)
        return user

    async def _load(self, user_id: str) -> User | None:
        try:
            row = await self._store.get(Entity.PROFILES, user_id)
        except StoreError as exc:
            raise PersistenceError(f"Could not load profile {user_id}") from exc
        return row_to_user(row) if row is not None else None

    async def _create(self, user_id: str, email: str, display_name: str | None) -> User:
        # Role is never taken from the session; new profiles always start as USER.
        profile = User(
            id=user_id,
            name=(display_name or "").strip() or default_display_name(email),
            email=email,
            role=Role.USER,
            is_active=True,
            created_at=datetime.now(timezone.utc),
        )
        try:
            row = await self._store.insert(Entity.PROFILES, user_to_row(profile))
        except DuplicateKeyError:
            logger.info("Profile %s was created concurrently; re-reading", user_id)
            existing = await self._load(user_id)
            if existing is None:  # pragma: no cover - removed between insert and read
                raise PersistenceError(f"Profile {user_id} collided but could not be read back")
            return existing
        except StoreError as exc:
            raise PersistenceError(f"Could not create profile {user_id}") from exc
        self._metrics.counter(PROFILES_CREATED).inc()
        logger.info("Created profile %s for %s", user_id, email)
        return row_to_user(row)

    async def _promote(self, user: User) -> User:
        try:
            row = await self._store.update(Entity.PROFILES, user.id, {"role": Role.ADMIN.value})
        except StoreError as exc:
            raise PersistenceError(f"Could not promote profile {user.id}") from exc
        self._metrics.counter(BOOTSTRAP_PROMOTIONS).inc()
        logger.info("Bootstrap rule promoted %s (%s) to ADMIN", user.id, user.email)
        return row_to_user(row) if row is not None else replace(user, role=Role.ADMIN)
