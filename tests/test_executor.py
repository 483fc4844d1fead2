"""
Unit tests for the iteration executor and the user context.

Verifies that scenario failures are captured as iteration results
instead of escaping, that the per-iteration timeout is enforced, that
checks feed their metrics, and that cancellation is never swallowed.
"""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from vu_load_tools.core.load_test_errors import ErrorKind, IterationError, LoadTestError
from vu_load_tools.core.load_test_executor import (
    IterationExecutor,
    Scenario,
    UserContext,
    invoke,
)
from vu_load_tools.core.load_test_metrics import (
    CHECKS,
    INTERRUPTED_ITERATIONS,
    ITERATION_DURATION,
    ITERATION_FAILED,
    ITERATIONS,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def context(registry, simulated_clock):
    """Provide a user context wired to the test registry."""
    return UserContext(1, metrics=registry, clock=simulated_clock)


@pytest.mark.asyncio
async def test_successful_iteration_records_metrics(registry, context, simulated_clock):
    """Test that a passing iteration counts once and records its duration."""
    # Arrange
    executor = IterationExecutor(registry, simulated_clock)

    async def scenario(ctx):
        await ctx.sleep(0.25)

    # Act
    result = await executor.run(context, scenario)
    snapshot = registry.snapshot()

    # Assert
    assert result.ok
    assert result.duration == pytest.approx(0.25)
    assert snapshot[ITERATIONS].count == 1
    assert snapshot[ITERATION_DURATION].max == pytest.approx(250.0)
    assert snapshot[ITERATION_FAILED].passes == 0
    assert context.iteration == 0


@pytest.mark.asyncio
async def test_exception_becomes_iteration_failure(registry, context):
    """Test that an exception in scenario code is captured, not raised."""
    executor = IterationExecutor(registry)

    async def scenario(ctx):
        raise RuntimeError("connection refused")

    result = await executor.run(context, scenario)

    assert not result.ok
    assert result.error.kind is ErrorKind.ITERATION
    assert result.error.message == "RuntimeError: connection refused"
    assert registry.snapshot()[ITERATION_FAILED].rate == 1.0


@pytest.mark.asyncio
async def test_fail_uses_plain_message(registry, context):
    """Test that context.fail() fails the iteration with its message."""
    executor = IterationExecutor(registry)

    async def scenario(ctx):
        ctx.fail("cart is empty")

    result = await executor.run(context, scenario)

    assert result.error.kind is ErrorKind.ITERATION
    assert result.error.message == "cart is empty"


@pytest.mark.asyncio
async def test_iteration_timeout_is_enforced(registry, context):
    """Test that a slow iteration is cut off and reported as a timeout."""
    # Arrange
    executor = IterationExecutor(registry, timeout=0.05)

    async def scenario(ctx):
        await asyncio.sleep(10)

    # Act
    started = time.monotonic()
    result = await executor.run(context, scenario)

    # Assert
    assert time.monotonic() - started < 5
    assert result.error.kind is ErrorKind.TIMEOUT
    assert "0.05s" in result.error.message
    assert registry.snapshot()[ITERATIONS].count == 1


@pytest.mark.asyncio
async def test_timeout_raised_by_scenario_is_an_ordinary_failure(registry, context):
    """Test that a TimeoutError from scenario code is not a timeout of the iteration."""
    executor = IterationExecutor(registry, timeout=30)

    async def scenario(ctx):
        raise asyncio.TimeoutError()

    result = await executor.run(context, scenario)

    assert result.error.kind is ErrorKind.ITERATION


@pytest.mark.asyncio
async def test_sync_scenario_runs_in_thread(registry, context):
    """Test that a plain function is accepted and its failures captured."""
    executor = IterationExecutor(registry)
    seen = []

    def scenario(ctx):
        seen.append(ctx.vu_id)
        raise ValueError("bad payload")

    result = await executor.run(context, scenario)

    assert seen == [1]
    assert result.error.message == "ValueError: bad payload"


@pytest.mark.asyncio
async def test_late_checks_from_timed_out_thread_stay_with_their_iteration(registry, context):
    """Test that a worker thread outliving its timeout cannot add checks to the next iteration."""
    # Arrange
    executor = IterationExecutor(registry, timeout=0.2)
    release = threading.Event()
    finished = threading.Event()

    def slow(ctx):
        release.wait(5)
        ctx.check("late", True)
        finished.set()

    async def next_iteration(ctx):
        release.set()
        await asyncio.to_thread(finished.wait, 5)
        ctx.check("fresh", True)

    # Act
    first = await executor.run(context, slow)
    second = await executor.run(context, next_iteration)

    # Assert
    assert first.error.kind is ErrorKind.TIMEOUT
    assert first.checks == ()
    assert second.ok
    assert [check.name for check in second.checks] == ["fresh"]


@pytest.mark.asyncio
async def test_checks_are_recorded(registry, context):
    """Test that checks feed the checks rate and a rate named after each check."""
    # Arrange
    executor = IterationExecutor(registry)

    async def scenario(ctx):
        ctx.check("status is 200", lambda r: r == 200, 200)
        ctx.check("body has title", False)

    # Act
    result = await executor.run(context, scenario)
    snapshot = registry.snapshot()

    # Assert
    assert result.ok
    assert [(c.name, c.passed) for c in result.checks] == [("status is 200", True), ("body has title", False)]
    assert snapshot[CHECKS].rate == pytest.approx(0.5)
    assert snapshot["status is 200"].rate == 1.0
    assert snapshot["body has title"].rate == 0.0


def test_check_all_requires_every_check(registry, context):
    """Test that check_all passes only when each predicate passes."""
    passed = context.check_all(404, {
        "status is 200": lambda r: r == 200,
        "status is set": lambda r: r is not None,
    })

    assert passed is False
    assert registry.snapshot()[CHECKS].total == 2


@pytest.mark.asyncio
async def test_cancellation_propagates(registry, context):
    """Test that cancelling a running iteration is re-raised and counted."""
    # Arrange
    executor = IterationExecutor(registry)
    started = asyncio.Event()

    async def scenario(ctx):
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(executor.run(context, scenario))
    await started.wait()

    # Act
    task.cancel()

    # Assert
    with pytest.raises(asyncio.CancelledError):
        await task
    snapshot = registry.snapshot()
    assert snapshot[INTERRUPTED_ITERATIONS].count == 1
    assert snapshot[ITERATIONS].count == 0


@pytest.mark.asyncio
async def test_scenario_object_runs_its_function(context):
    """Test that Scenario wraps a function and exposes its tags."""
    calls = []
    scenario = Scenario("browse", lambda ctx: calls.append(ctx.scenario), tags={"test_type": "load"})

    await scenario.run(context)

    assert calls == ["default"]
    assert scenario.tags == {"test_type": "load"}


@pytest.mark.asyncio
async def test_scenario_without_function_fails_iteration(registry, context):
    """Test that a bare Scenario is reported as an iteration failure."""
    result = await IterationExecutor(registry).run(context, Scenario("empty").run)

    assert result.error.kind is ErrorKind.ITERATION
    assert "NotImplementedError" in result.error.message


@pytest.mark.asyncio
async def test_invoke_awaits_coroutine_returned_by_callable(context):
    """Test that a callable returning an awaitable has it awaited."""
    async def work(ctx):
        return ctx.vu_id * 10

    assert await invoke(lambda ctx: work(ctx), context) == 10


def test_iteration_error_is_load_test_error():
    """Test the exception hierarchy used by scenario code."""
    assert issubclass(IterationError, LoadTestError)
