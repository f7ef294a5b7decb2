"""Shared pytest fixtures: a controllable clock and a recording observer."""

from datetime import datetime, timedelta, timezone

import pytest

from config import EngineSettings
from services import QueueService

START = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(minutes=minutes, seconds=seconds)
        return self.now


class RecordingObserver:
    def __init__(self):
        self.views = []

    def deliver(self, view):
        self.views.append(view)

    @property
    def last(self):
        return self.views[-1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def service(settings, clock):
    return QueueService(settings, clock=clock)


@pytest.fixture
def recorder():
    return RecordingObserver()
