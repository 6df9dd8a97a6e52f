from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from apps.api.helpdesk import BootstrapPolicy, HelpdeskService, Role, User
from apps.api.helpdesk.models import user_to_row
from apps.api.metrics import MetricsRegistry, register_default_metrics
from apps.api.services.changes import ChangeFeed, Entity
from apps.api.services.store import MemoryStore


@pytest.fixture
def registry() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def store(feed: ChangeFeed) -> MemoryStore:
    return MemoryStore(feed=feed)


@pytest.fixture
def policy() -> BootstrapPolicy:
    return BootstrapPolicy.from_values(["ti@grupoairslaid.com.br"], ["admin", "dev"])


@pytest.fixture
def service(store: MemoryStore, policy: BootstrapPolicy, registry: MetricsRegistry) -> HelpdeskService:
    return HelpdeskService(store, policy=policy, registry=registry)


async def _add_profile(
    store: MemoryStore,
    user_id: str,
    name: str,
    *,
    role: Role = Role.USER,
    is_active: bool = True,
) -> User:
    user = User(
        id=user_id,
        name=name,
        email=f"{name.lower()}@example.com",
        role=role,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
    )
    await store.insert(Entity.PROFILES, user_to_row(user))
    return user


@pytest.fixture
def make_profile(store: MemoryStore):
    async def factory(user_id: str, name: str, **kwargs) -> User:
        return await _add_profile(store, user_id, name, **kwargs)

    return factory


@pytest_asyncio.fixture
async def ana(store: MemoryStore) -> User:
    return await _add_profile(store, "U1", "Ana")


@pytest_asyncio.fixture
async def bo(store: MemoryStore) -> User:
    return await _add_profile(store, "A1", "Bo", role=Role.ADMIN)


@pytest_asyncio.fixture
async def cy(store: MemoryStore) -> User:
    return await _add_profile(store, "A2", "Cy", role=Role.ADMIN)
