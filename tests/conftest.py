"""Pytest configuration, Hypothesis profiles and shared fixtures."""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import settings

from outrelay.core.audit import InMemoryAuditSink
from outrelay.ledgers.inmemory import InMemoryLedger

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

EPOCH = datetime(2025, 1, 6, 8, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock for ledgers and monitors."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryLedger:
    return InMemoryLedger(clock=clock)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()
