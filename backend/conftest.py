"""Shared pytest fixtures for the CycleSafe backend tests."""

import asyncio
from typing import Optional

import httpx
import pytest

from cache import MemoryStore
from models import AlertRecord
from scoring import clear_score_cache


class FakeSource:
    """In-memory alert source. Optionally blocks on a gate or raises."""

    def __init__(self, name: str, records=(), error: Optional[BaseException] = None,
                 gate: Optional[asyncio.Event] = None):
        self.name = name
        self.records = list(records)
        self.error = error
        self.gate = gate
        self.calls = 0
        self.locations = []

    async def fetch(self, location, now):
        self.calls += 1
        self.locations.append(location)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.records)


@pytest.fixture(autouse=True)
def _fresh_score_cache():
    clear_score_cache()
    yield
    clear_score_cache()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_alert():
    def _make(cluster_id: str, expires_at: float, **extra) -> AlertRecord:
        return AlertRecord(clusterId=cluster_id, expiresAt=expires_at, **extra)
    return _make


@pytest.fixture
def make_source():
    return FakeSource


@pytest.fixture
def mock_http():
    """Build an httpx.AsyncClient whose requests go to handler(request)."""
    def _make(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return _make
