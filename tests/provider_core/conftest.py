from __future__ import annotations

import pytest

import provider_core.circuit_breaker.registry as registry_mod
from tests.provider_core.support.fakes import FakeClock, FakeLogger, RecordingSleep


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a sleep double so retry tests never wait."""
    return RecordingSleep()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Freeze the circuit registry clock at a controllable instant."""
    clock = FakeClock()
    monkeypatch.setattr(registry_mod, "_utcnow", clock.now)
    return clock
