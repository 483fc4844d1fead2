"""
Shared pytest fixtures for the load engine tests.

Provides fakes for the engine's outer dependencies so that no test opens
a network connection or waits on wall-clock ramps: an in-memory HTTP
transport, a pool that only records target changes, and a simulated clock.
"""

from __future__ import annotations

import pytest

from vu_load_tools.core.load_test_clock import SimulatedClock
from vu_load_tools.core.load_test_http import HttpResponse
from vu_load_tools.core.load_test_metrics import MetricRegistry, register_builtin_metrics


class FakeTransport:
    """Answers every request in memory and remembers what was asked."""

    def __init__(self, status: int = 200, statuses: dict | None = None,
                 errors: dict | None = None, duration: float = 12.5):
        self.status = status
        self.statuses = statuses or {}
        self.errors = errors or {}
        self.duration = duration
        self.calls: list[tuple[str, str, dict]] = []

    async def __call__(self, method: str, url: str, **kwargs) -> HttpResponse:
        self.calls.append((method, url, kwargs))
        if url in self.errors:
            raise self.errors[url]
        return HttpResponse(
            status=self.statuses.get(url, self.status),
            body=b'{"ok": true}',
            url=url,
            method=method,
            duration=self.duration,
        )


class RecordingPool:
    """Stand-in for VirtualUserPool that records scheduler calls."""

    def __init__(self, clock=None):
        self.clock = clock
        self.targets: list[int] = []
        self.timeline: list[tuple[float, int]] = []
        self.stopped = False

    def set_target(self, n: int) -> None:
        self.targets.append(n)
        if self.clock is not None:
            self.timeline.append((self.clock.now(), n))

    async def stop_all(self) -> None:
        self.stopped = True


@pytest.fixture
def simulated_clock():
    """Provide a simulated clock starting at t=0."""
    return SimulatedClock()


@pytest.fixture
def registry():
    """Provide a registry with every built-in metric registered."""
    return register_builtin_metrics(MetricRegistry())


@pytest.fixture
def fake_transport():
    """Provide an in-memory transport that answers 200 to everything."""
    return FakeTransport()


@pytest.fixture
def recording_pool(simulated_clock):
    """Provide a recording pool bound to the simulated clock."""
    return RecordingPool(simulated_clock)
