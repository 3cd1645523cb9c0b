"""Shared fixtures: temporary store, fake clock, mocked API."""

from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest

from fieldsync.store import LocalStore, OfflineStorage
from fieldsync.sync import ApiClient, ApiContext

BASE_URL = "http://api.test/api"


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "offline.db"


@pytest.fixture
def store(db_path):
    local_store = LocalStore(db_path)
    yield local_store
    local_store.close()


@pytest.fixture
def storage(store, clock) -> OfflineStorage:
    return OfflineStorage(store, clock=clock)


@pytest.fixture
async def make_api():
    """Build ApiClients whose requests are answered by ``handler``."""
    clients: list[ApiClient] = []

    def factory(
        handler: Callable[[httpx.Request], httpx.Response],
        context: ApiContext | None = None,
    ) -> ApiClient:
        client = ApiClient(
            BASE_URL,
            context=context or ApiContext(platform_id="platform-1", access_token="token-1"),
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()
