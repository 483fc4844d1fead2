#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
迭代执行器
为虚拟用户执行一次场景迭代，并把结果记入指标
"""

import asyncio
import inspect
import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .load_test_clock import MonotonicClock
from .load_test_errors import ErrorKind, IterationError, IterationTimeout
from .load_test_metrics import (
    CHECKS,
    INTERRUPTED_ITERATIONS,
    ITERATION_DURATION,
    ITERATION_FAILED,
    ITERATIONS,
    MetricKind,
    MetricRegistry,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    """一次断言的结果"""
    name: str
    passed: bool


@dataclass(frozen=True)
class IterationFailure:
    """迭代失败的类型和描述"""
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class IterationResult:
    """单次迭代结果；duration 单位为秒"""
    duration: float
    checks: Tuple[CheckResult, ...] = ()
    error: Optional[IterationFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def invoke(fn: Callable, context: 'UserContext') -> Any:
    """
    以上下文调用迭代函数

    协程函数直接在事件循环上等待；普通函数放到工作线程执行，
    避免阻塞代码拖住其他虚拟用户。

    Args:
        fn: 协程函数或普通可调用对象
        context: 传给 fn 的上下文

    Returns:
        fn 的返回值；普通函数返回可等待对象时会继续等待
    """
    if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, '__call__', None)):
        return await fn(context)
    if isinstance(context, UserContext):
        result = await asyncio.to_thread(context.bound(fn))
    else:
        result = await asyncio.to_thread(fn, context)
    if inspect.isawaitable(result):
        return await result
    return result


class Scenario:
    """
    命名的迭代函数

    子类可以重写 run()，而不传入 fn
    """

    def __init__(self, name: str, fn: Optional[Callable] = None, tags: Optional[Dict[str, str]] = None):
        self.name = name
        self.fn = fn
        self.tags = dict(tags or {})

    async def run(self, context: 'UserContext') -> Any:
        """执行一次迭代"""
        if self.fn is None:
            raise NotImplementedError(f"scenario '{self.name}' has no iteration function")
        return await invoke(self.fn, context)

    def __repr__(self) -> str:
        return f"Scenario({self.name!r})"


class UserContext:
    """
    虚拟用户交给迭代函数的状态

    Attributes:
        vu_id: 虚拟用户 ID，运行内唯一
        scenario: 场景名称
        iteration: 该用户的迭代序号，从 0 开始
        setup_data: setup() 的返回值，只读共享
        tags: 场景标签
        http: HttpClient；运行没有传输层时为 None
        metrics: 本次运行的 MetricRegistry
    """

    def __init__(
        self,
        vu_id: int,
        scenario: str = 'default',
        metrics: Optional[MetricRegistry] = None,
        clock=None,
        http=None,
        setup_data: Any = None,
        tags: Optional[Dict[str, str]] = None
    ):
        self.vu_id = vu_id
        self.scenario = scenario
        self.metrics = metrics
        self.http = http
        self.setup_data = setup_data
        self.tags = dict(tags or {})
        self.iteration = -1
        self._clock = clock or MonotonicClock()
        self._checks: List[CheckResult] = []
        self._thread_checks = threading.local()

    def check(self, name: str, predicate, response: Any = None) -> bool:
        """
        为当前迭代记录一个命名断言

        Args:
            name: 断言名称，同时也是它写入的比率指标名
            predicate: 作用于 response 的可调用对象，或普通真假值
            response: 传给 predicate 的对象

        Returns:
            断言是否通过
        """
        passed = bool(predicate(response) if callable(predicate) else predicate)
        checks = getattr(self._thread_checks, 'checks', None)
        (self._checks if checks is None else checks).append(CheckResult(name, passed))
        if self.metrics is not None:
            self.metrics.observe(CHECKS, passed)
            self.metrics.register(name, MetricKind.RATE).add(passed)
        return passed

    def check_all(self, response: Any, checks: Dict[str, Any]) -> bool:
        """对同一响应执行全部断言；全部通过才返回 True"""
        results = [self.check(name, predicate, response) for name, predicate in checks.items()]
        return all(results)

    def add(self, metric_name: str, value) -> None:
        """向自定义指标提交观测值"""
        self.metrics.observe(metric_name, value)

    async def sleep(self, seconds: float) -> None:
        await self._clock.sleep(seconds)

    async def think(self, low: float, high: float) -> None:
        """随机暂停 [low, high] 秒"""
        await self._clock.sleep(random.uniform(low, high))

    def fail(self, message: str) -> None:
        """使当前迭代失败"""
        raise IterationError(message)

    def bound(self, fn: Callable) -> Callable[[], Any]:
        """
        包装 fn(self) 供工作线程调用

        该线程中的断言记入调用 bound() 时的迭代，即使该迭代已经超时。
        """
        checks = self._checks

        def call():
            self._thread_checks.checks = checks
            try:
                return fn(self)
            finally:
                self._thread_checks.checks = None
        return call

    def begin_iteration(self) -> None:
        self.iteration += 1
        self._checks = []

    def end_iteration(self) -> Tuple[CheckResult, ...]:
        """取出本次迭代的断言结果"""
        checks = tuple(self._checks)
        self._checks = []
        return checks


def _describe(exc: BaseException) -> str:
    if isinstance(exc, IterationError):
        return str(exc) or type(exc).__name__
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


async def _guarded(fn: Callable, context: UserContext) -> Any:
    # 场景代码自己抛出的超时（如客户端超时）按普通失败处理
    try:
        return await invoke(fn, context)
    except IterationTimeout:
        raise
    except asyncio.TimeoutError as exc:
        raise IterationError(_describe(exc)) from exc


class IterationExecutor:
    """
    执行迭代并记录 iterations、iteration_duration 和 iteration_failed

    失败不会向外传播；取消总是向外传播。
    """

    def __init__(self, registry: MetricRegistry, clock=None, timeout: Optional[float] = None):
        self._registry = registry
        self._clock = clock or MonotonicClock()
        self.timeout = timeout

    async def run(self, context: UserContext, iteration_fn: Callable) -> IterationResult:
        """
        执行一次 iteration_fn

        Args:
            context: 虚拟用户上下文
            iteration_fn: 接收上下文的协程函数或普通可调用对象

        Returns:
            IterationResult：耗时、断言和失败信息
        """
        context.begin_iteration()
        start = self._clock.now()
        error = None

        try:
            if self.timeout is None:
                await _guarded(iteration_fn, context)
            else:
                await asyncio.wait_for(_guarded(iteration_fn, context), self.timeout)
        except asyncio.CancelledError:
            self._registry.observe(INTERRUPTED_ITERATIONS, 1)
            raise
        except IterationTimeout as exc:
            error = IterationFailure(ErrorKind.TIMEOUT, str(exc))
        except asyncio.TimeoutError:
            # 这里只可能来自 wait_for，见 _guarded
            error = IterationFailure(ErrorKind.TIMEOUT, str(IterationTimeout(self.timeout)))
        except Exception as exc:
            error = IterationFailure(ErrorKind.ITERATION, _describe(exc))

        duration = self._clock.now() - start
        checks = context.end_iteration()

        self._registry.observe(ITERATIONS, 1)
        self._registry.observe(ITERATION_DURATION, duration * 1000.0)
        self._registry.observe(ITERATION_FAILED, error is not None)

        if error is not None:
            logger.debug("vu %s iteration %s failed (%s): %s",
                         context.vu_id, context.iteration, error.kind.value, error.message)

        return IterationResult(duration, checks, error)
