"""
Integration tests for the run coordinator.

Runs short real-time workloads (fractions of a second) against an
in-memory transport and checks the lifecycle, the verdict, abort
behaviour and the setup/teardown hand-off.
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeTransport
from vu_load_tools.core.load_test_config import EXECUTOR_RAMPING_VUS, LoadTestOptions, ScenarioConfig, build_options
from vu_load_tools.core.load_test_core import RunCoordinator, RunState, Verdict, run_load_test
from vu_load_tools.core.load_test_errors import AbortReason, ConfigurationError
from vu_load_tools.core.load_test_metrics import CHECKS, HTTP_REQS, ITERATION_FAILED, ITERATIONS, VUS, VUS_MAX

pytestmark = pytest.mark.integration


def _coordinator(config: dict, functions: dict, transport=None) -> RunCoordinator:
    return RunCoordinator(build_options(config, functions), transport=transport or FakeTransport())


@pytest.mark.asyncio
async def test_error_rate_breach_fails_the_run():
    """Test that 15 errors in 100 observations fail rate<0.1 with observed 0.15."""
    # Arrange
    calls = {"n": 0}

    async def scenario(ctx):
        if calls["n"] < 100:
            ctx.add("error_rate", calls["n"] < 15)
        calls["n"] += 1
        await asyncio.sleep(0)

    coordinator = _coordinator(
        {
            "vus": 2,
            "duration": 0.5,
            "metrics": {"error_rate": "rate"},
            "thresholds": {"error_rate": ["rate<0.1"]},
        },
        {"default": scenario},
    )

    # Act
    result = await coordinator.run()

    # Assert
    assert calls["n"] >= 100
    assert result.verdict is Verdict.FAIL
    assert result.state is RunState.COMPLETED
    [outcome] = result.failed_thresholds
    assert outcome.threshold.metric_name == "error_rate"
    assert outcome.observed_value == pytest.approx(0.15)
    assert coordinator.transitions == [RunState.CONFIGURING, RunState.RUNNING, RunState.COMPLETED]


@pytest.mark.asyncio
async def test_passing_run_with_http_and_checks():
    """Test a clean run: checks pass, http metrics recorded, verdict Pass."""
    # Arrange
    transport = FakeTransport()

    async def scenario(ctx):
        response = await ctx.http.get("/get")
        ctx.check("status is 200", lambda r: r.status == 200, response)
        await ctx.sleep(0.01)

    coordinator = _coordinator(
        {
            "vus": 3,
            "duration": 0.3,
            "url": "http://shop.test",
            "thresholds": {"checks": ["rate>0.99"], "http_req_duration": ["p(95)<2000"]},
        },
        {"default": scenario},
        transport,
    )

    # Act
    result = await coordinator.run()

    # Assert
    assert result.passed
    metrics = result.metrics
    assert metrics[ITERATIONS].count > 0
    assert metrics[HTTP_REQS].count == metrics[ITERATIONS].count
    assert metrics[CHECKS].rate == 1.0
    assert metrics[VUS_MAX].value == 3
    assert metrics[VUS].value == 0
    assert transport.calls[0][1] == "http://shop.test/get"


@pytest.mark.asyncio
async def test_unknown_threshold_metric_fails_before_any_user():
    """Test that configuration errors surface before a virtual user exists."""
    # Arrange
    started = []

    async def scenario(ctx):
        started.append(ctx.vu_id)

    coordinator = _coordinator(
        {"vus": 5, "duration": 1, "thresholds": {"no_such_metric": ["rate<0.1"]}},
        {"default": scenario},
    )

    # Act / Assert
    with pytest.raises(ConfigurationError):
        await coordinator.run()
    assert started == []
    assert coordinator.state is RunState.CONFIGURING
    assert coordinator.result is None


@pytest.mark.asyncio
async def test_ramping_scenario_without_stages_is_rejected_before_users_start():
    """Test that a ramping scenario with no stages never reaches the pool."""
    # Arrange
    calls = {"n": 0}

    async def scenario(ctx):
        calls["n"] += 1

    config = {"scenarios": {"s": {"executor": "ramping-vus", "startVUs": 3, "stages": []}}}
    options = LoadTestOptions(scenarios=(
        ScenarioConfig(name="s", fn=scenario, executor=EXECUTOR_RAMPING_VUS, start_vus=3),
    ))
    coordinator = RunCoordinator(options, transport=FakeTransport())

    # Act / Assert
    with pytest.raises(ConfigurationError, match="at least one stage"):
        build_options(config, {"default": scenario})
    with pytest.raises(ConfigurationError, match="at least one stage"):
        await coordinator.run()
    assert calls["n"] == 0
    assert coordinator.state is RunState.CONFIGURING


def test_non_positive_iteration_timeout_is_rejected_at_configure():
    """Test that a zero per-scenario iteration timeout fails configuration, not iterations."""
    options = LoadTestOptions(scenarios=(
        ScenarioConfig(name="s", fn=lambda ctx: None, duration=1, iteration_timeout=0.0),
    ))

    with pytest.raises(ConfigurationError, match="iterationTimeout"):
        RunCoordinator(options, transport=FakeTransport()).configure()
    with pytest.raises(ConfigurationError, match="iterationTimeout"):
        build_options({"scenarios": {"s": {"duration": 1, "iterationTimeout": 0}}}, {"default": lambda ctx: None})


def test_custom_metric_clashing_with_builtin_is_rejected():
    """Test that a custom metric clashing with a built-in is a configuration error."""
    coordinator = _coordinator(
        {"vus": 1, "duration": 1, "metrics": {"checks": "counter"}},
        {"default": lambda ctx: None},
    )

    with pytest.raises(ConfigurationError):
        coordinator.configure()


@pytest.mark.asyncio
async def test_abort_threshold_stops_run_early():
    """Test that a failing abortOnFail threshold aborts the run."""
    # Arrange
    async def scenario(ctx):
        await asyncio.sleep(0.005)
        ctx.fail("always broken")

    coordinator = _coordinator(
        {
            "vus": 2,
            "duration": 30,
            "abortCheckInterval": 0.05,
            "thresholds": {ITERATION_FAILED: [{"threshold": "rate<0.1", "abortOnFail": True}]},
        },
        {"default": scenario},
    )

    # Act
    result = await asyncio.wait_for(coordinator.run(), 10)

    # Assert
    assert result.verdict is Verdict.FAIL
    assert result.state is RunState.ABORTED
    assert result.abort_reason is AbortReason.ABORT_THRESHOLD
    assert "iteration_failed: rate<0.1" in result.abort_detail
    assert result.duration < 10
    assert coordinator.transitions[-1] is RunState.ABORTED


@pytest.mark.asyncio
async def test_abort_threshold_checked_at_stage_boundary():
    """Test that stage boundaries evaluate abort thresholds without the safety tick."""
    async def scenario(ctx):
        await asyncio.sleep(0.005)
        ctx.fail("broken")

    coordinator = _coordinator(
        {
            "startVUs": 2,
            "stages": [{"duration": 0.2, "target": 2}, {"duration": 30, "target": 2}],
            "abortCheckInterval": 60,
            "thresholds": {ITERATION_FAILED: [{"threshold": "rate<0.1", "abortOnFail": True}]},
        },
        {"default": scenario},
    )

    result = await asyncio.wait_for(coordinator.run(), 10)

    assert result.abort_reason is AbortReason.ABORT_THRESHOLD
    assert result.duration < 10


@pytest.mark.asyncio
async def test_delayed_abort_threshold_waits():
    """Test that delayAbortEval holds off the abort until it has elapsed."""
    async def scenario(ctx):
        await asyncio.sleep(0.005)
        ctx.fail("broken")

    coordinator = _coordinator(
        {
            "vus": 1,
            "duration": 0.3,
            "abortCheckInterval": 0.05,
            "thresholds": {ITERATION_FAILED: [{"threshold": "rate<0.1", "abortOnFail": True, "delayAbortEval": "1m"}]},
        },
        {"default": scenario},
    )

    result = await coordinator.run()

    assert result.state is RunState.COMPLETED
    assert result.verdict is Verdict.FAIL


@pytest.mark.asyncio
async def test_cancel_interrupts_and_runs_teardown():
    """Test that cancel() aborts the run, interrupts users and still tears down."""
    # Arrange
    torn_down = []

    async def scenario(ctx):
        await asyncio.sleep(10)

    async def teardown(ctx):
        torn_down.append(True)

    coordinator = _coordinator({"vus": 3, "duration": 30}, {"default": scenario, "teardown": teardown})
    task = asyncio.create_task(coordinator.run())
    await asyncio.sleep(0.1)

    # Act
    coordinator.cancel()
    result = await asyncio.wait_for(task, 5)

    # Assert
    assert result.state is RunState.ABORTED
    assert result.abort_reason is AbortReason.CANCELLED
    assert result.verdict is Verdict.FAIL
    assert result.metrics["interrupted_iterations"].count == 3
    assert torn_down == [True]


@pytest.mark.asyncio
async def test_setup_data_is_shared_with_scenarios_and_teardown():
    """Test the setup -> scenarios -> teardown hand-off and lifecycle order."""
    # Arrange
    seen = set()
    teardown_data = []

    async def setup(ctx):
        return {"token": "abc"}

    async def scenario(ctx):
        seen.add(ctx.setup_data["token"])
        await asyncio.sleep(0.01)

    def teardown(ctx):
        teardown_data.append(ctx.setup_data)

    coordinator = _coordinator(
        {"vus": 2, "duration": 0.1},
        {"default": scenario, "setup": setup, "teardown": teardown},
    )

    # Act
    result = await coordinator.run()

    # Assert
    assert result.passed
    assert seen == {"abc"}
    assert teardown_data == [{"token": "abc"}]
    assert coordinator.transitions == [
        RunState.CONFIGURING,
        RunState.SETTING_UP,
        RunState.RUNNING,
        RunState.TEARING_DOWN,
        RunState.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_setup_failure_aborts_without_running_users():
    """Test that a failing setup aborts the run and skips scenarios and teardown."""
    started = []
    torn_down = []

    async def setup(ctx):
        raise RuntimeError("database unavailable")

    async def scenario(ctx):
        started.append(ctx.vu_id)

    coordinator = _coordinator(
        {"vus": 2, "duration": 0.1},
        {"default": scenario, "setup": setup, "teardown": lambda ctx: torn_down.append(True)},
    )

    result = await coordinator.run()

    assert result.state is RunState.ABORTED
    assert result.abort_reason is AbortReason.SETUP_FAILED
    assert "database unavailable" in result.abort_detail
    assert started == []
    assert torn_down == []


@pytest.mark.asyncio
async def test_teardown_failure_does_not_change_verdict():
    """Test that a teardown error is logged but the verdict stands."""
    async def teardown(ctx):
        raise RuntimeError("cleanup failed")

    coordinator = _coordinator(
        {"vus": 1, "duration": 0.05},
        {"default": lambda ctx: None, "teardown": teardown},
    )

    result = await coordinator.run()

    assert result.passed
    assert result.state is RunState.COMPLETED


@pytest.mark.asyncio
async def test_scenarios_run_side_by_side_with_unique_ids():
    """Test concurrent scenarios, startTime and run-wide unique user ids."""
    # Arrange
    ids = {"smoke": set(), "spike": set()}

    async def smoke(ctx):
        ids[ctx.scenario].add(ctx.vu_id)
        assert ctx.tags == {"test_type": "smoke"}
        await asyncio.sleep(0.01)

    async def spike(ctx):
        ids[ctx.scenario].add(ctx.vu_id)
        await asyncio.sleep(0.01)

    coordinator = _coordinator(
        {
            "scenarios": {
                "smoke": {"vus": 2, "duration": 0.4, "exec": "smoke", "tags": {"test_type": "smoke"}},
                "spike": {"executor": "ramping-vus", "startVUs": 3, "startTime": 0.1,
                          "stages": [{"duration": 0.2, "target": 3}], "exec": "spike"},
            },
        },
        {"smoke": smoke, "spike": spike},
    )

    # Act
    result = await coordinator.run()

    # Assert
    assert result.passed
    assert len(ids["smoke"]) == 2
    assert len(ids["spike"]) == 3
    assert not ids["smoke"] & ids["spike"]
    assert result.metrics[VUS_MAX].value == 5
    assert result.metrics[ITERATION_FAILED].total == result.metrics[ITERATIONS].count


@pytest.mark.asyncio
async def test_run_is_idempotent():
    """Test that a finished coordinator returns the same result again."""
    coordinator = _coordinator({"vus": 1, "duration": 0.05}, {"default": lambda ctx: None})

    first = await coordinator.run()
    second = await coordinator.run()

    assert first is second


@pytest.mark.asyncio
async def test_run_load_test_helper():
    """Test the one-call helper."""
    options = build_options({"vus": 1, "duration": 0.05}, {"default": lambda ctx: None})

    result = await run_load_test(options, transport=FakeTransport())

    assert result.to_dict()["verdict"] == "pass"
    assert result.to_dict()["metrics"][ITERATIONS]["count"] > 0
