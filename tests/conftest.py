"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

from typing import TYPE_CHECKING

import fakeredis.aioredis
import pytest
import pytest_asyncio

from kvauth.config import OAuthSettings, clear_settings
from kvauth.kv import MemoryKeyValueStore
from tests.helpers import FakeClock


if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch) -> Iterator[None]:
    """Keep user and project config files out of every test."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))
    monkeypatch.delenv("KVAUTH_CONFIG_FILE", raising=False)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock shared by stores and codecs."""
    return FakeClock()


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Create a fake Redis client for testing."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest_asyncio.fixture
async def memory_store(clock: FakeClock) -> AsyncIterator[MemoryKeyValueStore]:
    """An in-memory store driven by the fake clock."""
    store = MemoryKeyValueStore(clock=clock, queue_poll_interval=0.01)
    yield store
    await store.close()


@pytest.fixture
def oauth_settings() -> OAuthSettings:
    """Authorization server settings for a test tenant."""
    return OAuthSettings(
        client_id="client-123",
        client_secret="shh",
        tenant_name="contoso",
        base_url="https://app.example.com",
        scopes=["https://contoso.onmicrosoft.com/api/read"],
    )
