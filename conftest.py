from datetime import datetime, timedelta, timezone

import pytest

from api.services import build_services
from core.config import Settings


class TickingClock:
    """Deterministic clock: each call is one second after the previous one."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def services(settings, clock):
    return build_services(settings, clock=clock)


@pytest.fixture
def referrer(services):
    return services.users.create("referrer@example.com", "John Referrer")


@pytest.fixture
def referred(services):
    return services.users.create("referred@example.com", "Jane Referred")
