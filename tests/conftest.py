"""Shared fixtures for the calsync test suite."""

from __future__ import annotations

import pytest
from support import FakeTransport, ReversibleCipher, make_source

from calsync.calendar.models import CalendarSource
from calsync.calendar.store import InMemoryEventStore


@pytest.fixture
def cipher() -> ReversibleCipher:
    return ReversibleCipher()


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
async def source(store: InMemoryEventStore, cipher: ReversibleCipher) -> CalendarSource:
    created = make_source(cipher=cipher, username="alice", password="s3cret")
    return await store.create_source(created)
