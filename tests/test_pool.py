"""
Unit tests for the virtual user pool.

Exercises growth and shrinkage of the population, graceful draining
(an in-flight iteration completes exactly once), hard aborts, think
time, and the unique-id guarantee across the life of a pool.
"""

from __future__ import annotations

import asyncio

import pytest

from vu_load_tools.core.load_test_errors import ConfigurationError
from vu_load_tools.core.load_test_executor import IterationExecutor, UserContext
from vu_load_tools.core.load_test_metrics import INTERRUPTED_ITERATIONS, ITERATIONS
from vu_load_tools.core.load_test_pool import ThinkTime, VirtualUserPool

pytestmark = pytest.mark.unit


def _make_pool(registry, fn, **kwargs) -> VirtualUserPool:
    return VirtualUserPool(
        fn,
        IterationExecutor(registry),
        context_factory=lambda vu_id: UserContext(vu_id, metrics=registry),
        **kwargs,
    )


async def _until(condition, timeout: float = 2.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_set_target_grows_and_shrinks(registry):
    """Test that shrinking retires users only after their iteration ends."""
    # Arrange
    gate = asyncio.Event()

    async def scenario(ctx):
        await gate.wait()

    pool = _make_pool(registry, scenario)

    # Act / Assert: grow
    pool.set_target(3)
    assert pool.active_count() == 3
    assert pool.running_count() == 3

    # Act / Assert: shrink while iterations are blocked
    pool.set_target(1)
    assert pool.running_count() == 1
    assert pool.active_count() == 3

    gate.set()
    await _until(lambda: pool.active_count() == 1)
    assert pool.running_count() == 1

    await pool.stop_all()
    assert pool.active_count() == 0


@pytest.mark.asyncio
async def test_shrink_retires_newest_users(registry):
    """Test that ramp-down stops the most recently started users."""
    gate = asyncio.Event()

    async def scenario(ctx):
        await gate.wait()

    pool = _make_pool(registry, scenario)
    pool.set_target(4)

    pool.set_target(2)

    running = sorted(user.id for user in pool.users() if not user.stopping)
    assert running == [1, 2]
    gate.set()
    await pool.stop_all()


@pytest.mark.asyncio
async def test_stop_all_lets_inflight_iteration_finish_once(registry):
    """Test that graceful stop completes the running iteration exactly once."""
    # Arrange
    gate = asyncio.Event()
    started = asyncio.Event()
    finished = []
    results = []

    async def scenario(ctx):
        started.set()
        await gate.wait()
        finished.append(ctx.vu_id)

    pool = _make_pool(registry, scenario, on_result=lambda user, result: results.append(result))
    pool.set_target(1)
    await started.wait()

    # Act
    stopping = asyncio.create_task(pool.stop_all())
    await asyncio.sleep(0.01)
    assert not stopping.done()
    gate.set()
    await asyncio.wait_for(stopping, 2)

    # Assert
    assert finished == [1]
    assert len(results) == 1
    assert results[0].ok
    assert registry.snapshot()[ITERATIONS].count == 1
    assert registry.snapshot()[INTERRUPTED_ITERATIONS].count == 0


@pytest.mark.asyncio
async def test_abort_all_interrupts_iterations(registry):
    """Test that a hard abort cancels in-flight iterations."""
    # Arrange
    async def scenario(ctx):
        await asyncio.sleep(10)

    pool = _make_pool(registry, scenario)
    pool.set_target(2)
    await asyncio.sleep(0.01)

    # Act
    await asyncio.wait_for(pool.abort_all(), 2)

    # Assert
    assert pool.active_count() == 0
    assert registry.snapshot()[INTERRUPTED_ITERATIONS].count == 2
    assert registry.snapshot()[ITERATIONS].count == 0


@pytest.mark.asyncio
async def test_abort_before_users_start(registry):
    """Test that aborting users that never ran still empties the pool."""
    async def scenario(ctx):
        await asyncio.sleep(10)

    pool = _make_pool(registry, scenario)
    pool.set_target(3)

    await asyncio.wait_for(pool.abort_all(), 2)

    assert pool.active_count() == 0


@pytest.mark.asyncio
async def test_ids_are_never_reused(registry):
    """Test that every user gets a fresh id, even after a ramp-down."""
    # Arrange
    seen = set()

    async def scenario(ctx):
        seen.add(ctx.vu_id)
        await asyncio.sleep(0.001)

    pool = _make_pool(registry, scenario)

    # Act
    pool.set_target(3)
    await asyncio.sleep(0.01)
    pool.set_target(1)
    await _until(lambda: pool.active_count() == 1)
    pool.set_target(3)
    await asyncio.sleep(0.01)
    await pool.stop_all()

    # Assert
    assert seen == {1, 2, 3, 4, 5}
    assert pool.max_active == 3


@pytest.mark.asyncio
async def test_population_change_callback(registry):
    """Test that growth and draining both notify the observer."""
    counts = []
    pool = _make_pool(registry, lambda ctx: None, on_population_change=lambda: counts.append(pool.active_count()))

    pool.set_target(2)
    await pool.stop_all()

    assert counts[0] == 2
    assert counts[-1] == 0


@pytest.mark.asyncio
async def test_stop_interrupts_think_time(registry):
    """Test that a user pausing between iterations stops without waiting out the pause."""
    # Arrange
    pool = _make_pool(registry, lambda ctx: None, think_time=ThinkTime(60, 60))
    pool.set_target(1)
    await _until(lambda: registry.snapshot()[ITERATIONS].count >= 1)

    # Act
    await asyncio.wait_for(pool.stop_all(), 2)

    # Assert
    assert registry.snapshot()[ITERATIONS].count == 1


def test_set_target_rejects_negative(registry):
    """Test that a negative target is refused."""
    pool = _make_pool(registry, lambda ctx: None)

    with pytest.raises(ValueError):
        pool.set_target(-1)


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, ThinkTime(0, 0)),
        (2, ThinkTime(2, 2)),
        ([1, 3], ThinkTime(1, 3)),
        ((0.5, 0.5), ThinkTime(0.5, 0.5)),
    ],
)
def test_think_time_from_value(value, expected):
    """Test the accepted think time forms."""
    assert ThinkTime.from_value(value) == expected


@pytest.mark.parametrize("value", [[3, 1], [-1, 2], "fast", [1, 2, 3]])
def test_think_time_rejects_invalid(value):
    """Test that malformed think time is a configuration error."""
    with pytest.raises(ConfigurationError):
        ThinkTime.from_value(value)


def test_think_time_sample_within_bounds():
    """Test that sampled pauses stay inside the configured range."""
    think = ThinkTime(1, 3)

    assert all(1 <= think.sample() <= 3 for _ in range(200))
