"""
Shared fixtures: a controllable clock and an in-memory service graph.

Async components are driven with ``asyncio.run`` inside ordinary
synchronous tests, so every fixture here is loop-agnostic.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest

from backend.app.alerts.change_feed import LocalChangeFeed
from backend.app.alerts.models import AlertPolicy
from backend.app.alerts.store import InMemoryAlertStore
from backend.app.services import build_services

# 1 March 2024, 12:00 UTC (rainy season in Acre)
START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MemoryUploader:
    """Object-storage stand-in: keeps bytes in a dict, returns URL references."""

    def __init__(self, base_url: str = "https://cdn.example.org/evidence") -> None:
        self.base_url = base_url
        self.objects: Dict[str, bytes] = {}

    async def upload(self, content: bytes, content_type: str) -> str:
        extension = content_type.split("/")[-1] or "bin"
        reference = f"{self.base_url}/{uuid.uuid4().hex}.{extension}"
        self.objects[reference] = content
        return reference


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> AlertPolicy:
    return AlertPolicy()


@pytest.fixture
def feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture
def store(feed) -> InMemoryAlertStore:
    return InMemoryAlertStore(feed=feed)


@pytest.fixture
def uploader() -> MemoryUploader:
    return MemoryUploader()


@pytest.fixture
def services(store, feed, policy, clock, uploader):
    return build_services(
        store=store, feed=feed, policy=policy, clock=clock, uploader=uploader,
    )
