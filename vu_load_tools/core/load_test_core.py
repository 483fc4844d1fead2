#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
核心测试引擎
运行协调器：setup、按场景分阶段的虚拟用户、终止检查、teardown 和最终结论
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .load_test_clock import MonotonicClock
from .load_test_config import LoadTestOptions, ScenarioConfig
from .load_test_errors import AbortReason, ConfigurationError
from .load_test_executor import IterationExecutor, Scenario, UserContext, invoke
from .load_test_http import AiohttpTransport, HttpClient, create_session
from .load_test_metrics import (
    VUS,
    VUS_MAX,
    MetricKind,
    MetricRegistry,
    MetricsSnapshot,
    register_builtin_metrics,
)
from .load_test_pool import VirtualUserPool
from .load_test_scheduler import StageScheduler
from .load_test_thresholds import ThresholdEvaluator, ThresholdOutcome, parse_thresholds

logger = logging.getLogger(__name__)


class RunState(Enum):
    """运行状态"""
    CONFIGURING = "configuring"
    SETTING_UP = "setting_up"
    RUNNING = "running"
    TEARING_DOWN = "tearing_down"
    COMPLETED = "completed"
    ABORTED = "aborted"


class Verdict(Enum):
    """运行结论"""
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class RunResult:
    """运行的最终结果；duration 单位为秒"""
    verdict: Verdict
    metrics: MetricsSnapshot
    threshold_outcomes: Tuple[ThresholdOutcome, ...]
    duration: float
    state: RunState
    abort_reason: Optional[AbortReason] = None
    abort_detail: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS

    @property
    def failed_thresholds(self) -> List[ThresholdOutcome]:
        """未通过的阈值"""
        return [outcome for outcome in self.threshold_outcomes if not outcome.passed]

    def to_dict(self) -> Dict[str, Any]:
        """转换为报告用字典"""
        return {
            'verdict': self.verdict.value,
            'state': self.state.value,
            'abort_reason': self.abort_reason.value if self.abort_reason else None,
            'abort_detail': self.abort_detail,
            'duration': self.duration,
            'thresholds': [outcome.to_dict() for outcome in self.threshold_outcomes],
            'metrics': self.metrics.to_dict(),
        }


def _peak_vus(scenario: ScenarioConfig) -> int:
    start_vus, stages = scenario.ramp()
    return max([start_vus] + [stage.target for stage in stages])


class RunCoordinator:
    """
    驱动一次压测运行

    configure() 预先完成全部校验，因此 ConfigurationError 总在任何虚拟用户
    出现之前抛出。run() 随后依次经过 SETTING_UP、RUNNING、TEARING_DOWN，
    并返回 RunResult。

    Args:
        options: build_options() 生成的运行选项
        transport: context.http 使用的请求函数；省略时打开 aiohttp 会话
        clock: 调度器、用户池和思考时间共用的时间源
    """

    def __init__(self, options: LoadTestOptions, *, transport=None, clock=None):
        self.options = options
        self.state = RunState.CONFIGURING
        self.transitions: List[RunState] = [RunState.CONFIGURING]
        self.registry: Optional[MetricRegistry] = None
        self.evaluator: Optional[ThresholdEvaluator] = None
        self.result: Optional[RunResult] = None
        self._transport = transport
        self._clock = clock or MonotonicClock()
        self._http: Optional[HttpClient] = None
        self._pools: List[VirtualUserPool] = []
        self._setup_data: Any = None
        self._abort_reason: Optional[AbortReason] = None
        self._abort_detail: Optional[str] = None
        self._abort_event: Optional[asyncio.Event] = None
        self._started = 0.0
        self._vus_max = 0

    # ==================== 配置 ====================

    def configure(self) -> 'RunCoordinator':
        """
        注册指标并解析阈值

        Returns:
            self

        Raises:
            ConfigurationError: 场景、指标或阈值无效
        """
        if self.registry is not None:
            return self

        scenarios = self.options.scenarios
        if not scenarios:
            raise ConfigurationError("at least one scenario is required")
        names = [scenario.name for scenario in scenarios]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"scenario names must be unique, got {names}")
        for scenario in scenarios:
            if not callable(scenario.fn) and not isinstance(scenario.fn, Scenario):
                raise ConfigurationError(f"scenario '{scenario.name}' has no callable iteration function")
            if scenario.iteration_timeout is not None and scenario.iteration_timeout <= 0:
                raise ConfigurationError(f"scenario '{scenario.name}': iterationTimeout must be > 0")
            scenario.ramp()

        registry = MetricRegistry(trend_sample_cap=self.options.trend_sample_cap)
        register_builtin_metrics(registry)
        for name, kind in self.options.metrics.items():
            if isinstance(kind, dict):
                registry.register(name, kind.get('kind'), contains_time=bool(kind.get('time', False)))
            else:
                registry.register(name, kind)
        for check in self.options.checks:
            registry.register(check, MetricKind.RATE)

        self.evaluator = ThresholdEvaluator(parse_thresholds(self.options.thresholds, registry))
        self.registry = registry

        logger.info("configured %d scenarios, %d thresholds, %d metrics",
                    len(scenarios), len(self.evaluator.thresholds), len(registry))
        return self

    # ==================== 运行 ====================

    async def run(self) -> RunResult:
        """
        依次执行 setup、全部场景和 teardown

        Returns:
            RunResult；重复调用返回同一个对象
        """
        if self.result is not None:
            return self.result
        self.configure()

        self._abort_event = asyncio.Event()
        if self._abort_reason is not None:
            self._abort_event.set()
        self._started = self._clock.now()

        session = None
        try:
            transport = self._transport
            if transport is None:
                session = create_session(sum(_peak_vus(scenario) for scenario in self.options.scenarios))
                transport = AiohttpTransport(session, self.options.timeout)
            self._http = HttpClient(transport, self.registry, self.options.url)

            if await self._setup():
                await self._run_scenarios()
                await self._teardown()
        finally:
            if session is not None:
                await session.close()
            self.result = self._finish()

        return self.result

    def cancel(self) -> None:
        """立即停止运行；进行中的迭代会被中断"""
        self._abort(AbortReason.CANCELLED, "run cancelled")

    def _transition(self, state: RunState) -> None:
        logger.info("run state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def _abort(self, reason: AbortReason, detail: str) -> None:
        if self._abort_reason is not None:
            return
        self._abort_reason = reason
        self._abort_detail = detail
        logger.warning("aborting run (%s): %s", reason.value, detail)
        if self._abort_event is not None:
            self._abort_event.set()

    def _make_context(self, vu_id: int, scenario: str = 'default', tags=None) -> UserContext:
        return UserContext(
            vu_id,
            scenario=scenario,
            metrics=self.registry,
            clock=self._clock,
            http=self._http,
            setup_data=self._setup_data,
            tags=tags,
        )

    async def _setup(self) -> bool:
        """执行 setup；失败时终止运行并返回 False"""
        if self.options.setup is None:
            return True

        self._transition(RunState.SETTING_UP)
        try:
            self._setup_data = await invoke(self.options.setup, self._make_context(0, 'setup'))
        except Exception as exc:
            logger.exception("setup failed")
            self._abort(AbortReason.SETUP_FAILED, f"{type(exc).__name__}: {exc}")
            return False
        return True

    async def _teardown(self) -> None:
        """执行 teardown；失败只记录日志，不影响结论"""
        if self.options.teardown is None:
            return

        self._transition(RunState.TEARING_DOWN)
        try:
            await invoke(self.options.teardown, self._make_context(0, 'teardown'))
        except Exception:
            logger.exception("teardown failed")

    async def _run_scenarios(self) -> None:
        """并行运行全部场景，直到全部结束或运行被终止"""
        self._transition(RunState.RUNNING)
        if self._abort_event.is_set():
            return

        ids = itertools.count(1)
        scenario_tasks = [
            asyncio.create_task(self._run_scenario(scenario, ids), name=f"scenario-{scenario.name}")
            for scenario in self.options.scenarios
        ]
        abort_waiter = asyncio.create_task(self._abort_event.wait())
        monitor = asyncio.create_task(self._monitor())

        try:
            while not all(task.done() for task in scenario_tasks) and not abort_waiter.done():
                await asyncio.wait(scenario_tasks + [abort_waiter], return_when=asyncio.FIRST_COMPLETED)
            if self._abort_event.is_set():
                await self._interrupt(scenario_tasks)
        except asyncio.CancelledError:
            self._abort(AbortReason.CANCELLED, "run task cancelled")
            await self._interrupt(scenario_tasks)
            raise
        finally:
            monitor.cancel()
            abort_waiter.cancel()
            await asyncio.gather(monitor, abort_waiter, return_exceptions=True)

        for task in scenario_tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _interrupt(self, scenario_tasks: List[asyncio.Task]) -> None:
        for task in scenario_tasks:
            task.cancel()
        await asyncio.gather(*scenario_tasks, return_exceptions=True)
        await asyncio.gather(*(pool.abort_all() for pool in self._pools))

    async def _run_scenario(self, scenario: ScenarioConfig, ids: Iterator[int]) -> None:
        if scenario.start_time > 0:
            await self._clock.sleep(scenario.start_time)

        runner = scenario.fn if isinstance(scenario.fn, Scenario) else Scenario(scenario.name, scenario.fn, scenario.tags)
        pool = VirtualUserPool(
            runner.run,
            IterationExecutor(self.registry, self._clock, scenario.iteration_timeout),
            context_factory=partial(self._make_context, scenario=scenario.name, tags=scenario.tags),
            clock=self._clock,
            think_time=scenario.think_time,
            on_population_change=self._update_vus,
            id_source=ids,
            name=scenario.name,
        )
        self._pools.append(pool)

        start_vus, stages = scenario.ramp()
        scheduler = StageScheduler(
            tick_interval=self.options.tick_interval,
            start_vus=start_vus,
            on_stage_boundary=self._check_abort_thresholds,
            should_stop=self._abort_event.is_set,
            name=scenario.name,
        )
        await scheduler.run(stages, pool, self._clock)

    async def _monitor(self) -> None:
        # 阶段边界之间的兜底检查
        if self.evaluator is None or not self.evaluator.abort_thresholds:
            return
        while True:
            await self._clock.sleep(self.options.abort_check_interval)
            self._check_abort_thresholds()

    def _check_abort_thresholds(self, stage_index: Optional[int] = None) -> None:
        """评估 abortOnFail 阈值，有未通过的就终止运行"""
        if self._abort_reason is not None or not self.evaluator.abort_thresholds:
            return
        elapsed = self._clock.now() - self._started
        failed = self.evaluator.failed_abort_thresholds(self.registry.snapshot(elapsed), elapsed)
        if failed:
            self._abort(AbortReason.ABORT_THRESHOLD, "; ".join(str(outcome.threshold) for outcome in failed))

    def _update_vus(self) -> None:
        active = sum(pool.active_count() for pool in self._pools)
        self._vus_max = max(self._vus_max, active)
        self.registry.observe(VUS, active)
        self.registry.observe(VUS_MAX, self._vus_max)

    # ==================== 结束 ====================

    def _finish(self) -> RunResult:
        """进入最终状态，评估全部阈值并生成结论"""
        elapsed = self._clock.now() - self._started
        self._transition(RunState.ABORTED if self._abort_reason is not None else RunState.COMPLETED)

        snapshot = self.registry.snapshot(elapsed)
        outcomes = tuple(self.evaluator.evaluate(snapshot))
        failed = any(not outcome.passed for outcome in outcomes)
        verdict = Verdict.FAIL if failed or self._abort_reason is not None else Verdict.PASS

        logger.info("run %s after %.2fs: verdict %s (%d/%d thresholds passed)",
                    self.state.value, elapsed, verdict.value,
                    sum(1 for outcome in outcomes if outcome.passed), len(outcomes))
        return RunResult(
            verdict=verdict,
            metrics=snapshot,
            threshold_outcomes=outcomes,
            duration=elapsed,
            state=self.state,
            abort_reason=self._abort_reason,
            abort_detail=self._abort_detail,
        )


async def run_load_test(options: LoadTestOptions, *, transport=None, clock=None) -> RunResult:
    """
    配置并运行一次压测

    Args:
        options: 运行选项
        transport: 可选的请求函数
        clock: 可选的时间源

    Returns:
        RunResult
    """
    return await RunCoordinator(options, transport=transport, clock=clock).run()
