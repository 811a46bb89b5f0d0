"""
Shared fixtures for ChanDB tests.

Remote calls go to the in-memory platform; all governor waiting goes
through a fake clock so rate-limit tests run instantly.
"""

import asyncio
from typing import List

import pytest
import pytest_asyncio

from chandb.config import GovernorConfig, StorageConfig
from chandb.remote.governor import RateLimitGovernor
from chandb.remote.memory import InMemoryPlatform
from chandb.schema.types import TableSchema, column
from chandb.storage.store import ChannelStore

GUILD_ID = "guild-1"


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)

    @property
    def total_slept(self) -> float:
        return sum(self.sleeps)


@pytest.fixture
def fake_clock():
    """Fresh fake clock."""
    return FakeClock()


@pytest.fixture
def governor(fake_clock):
    """Governor with default budgets running on the fake clock."""
    return RateLimitGovernor(GovernorConfig(), clock=fake_clock, sleep=fake_clock.sleep)


@pytest_asyncio.fixture
async def platform():
    """Connected in-memory platform."""
    p = InMemoryPlatform()
    await p.connect()
    yield p
    await p.close()


@pytest_asyncio.fixture
async def small_platform():
    """Connected in-memory platform serving three messages per page."""
    p = InMemoryPlatform(page_size_cap=3)
    await p.connect()
    yield p
    await p.close()


@pytest.fixture
def store(platform, governor):
    """Store on the default in-memory platform."""
    return ChannelStore(platform, GUILD_ID, StorageConfig(), governor)


@pytest.fixture
def small_store(small_platform, governor):
    """Store whose scans span several pages."""
    return ChannelStore(
        small_platform,
        GUILD_ID,
        StorageConfig(page_size=3),
        governor,
    )


@pytest.fixture
def users_schema():
    """Schema of the users table used throughout the tests."""
    return TableSchema(
        table_name="users",
        columns=(
            column("id", "integer"),
            column("name", "text", nullable=True),
            column("score", "float", nullable=True),
            column("active", "boolean"),
        ),
    )
