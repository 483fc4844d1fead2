#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
虚拟用户池
维持指定数量的虚拟用户循环执行各自的场景
"""

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from .load_test_clock import MonotonicClock
from .load_test_errors import ConfigurationError
from .load_test_executor import IterationExecutor, IterationResult, UserContext

logger = logging.getLogger(__name__)


class VUState(Enum):
    """虚拟用户状态"""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ThinkTime:
    """同一用户两次迭代之间的均匀随机暂停（秒）"""
    minimum: float = 0.0
    maximum: float = 0.0

    def __post_init__(self):
        if self.minimum < 0 or self.maximum < self.minimum:
            raise ConfigurationError(
                f"think time bounds must satisfy 0 <= min <= max, got [{self.minimum}, {self.maximum}]"
            )

    @classmethod
    def from_value(cls, value) -> 'ThinkTime':
        """
        从配置值构造

        Args:
            value: None、单个数字或 [min, max]

        Returns:
            ThinkTime
        """
        if value is None:
            return cls()
        if isinstance(value, ThinkTime):
            return value
        if isinstance(value, (int, float)):
            return cls(float(value), float(value))
        try:
            low, high = value
        except (TypeError, ValueError):
            raise ConfigurationError(f"think time must be a number or a [min, max] pair, got {value!r}") from None
        return cls(float(low), float(high))

    def sample(self) -> float:
        """抽取一次暂停时长"""
        if self.maximum == self.minimum:
            return self.minimum
        return random.uniform(self.minimum, self.maximum)


class VirtualUser:
    """一个虚拟用户及其任务"""

    def __init__(self, vu_id: int, context: UserContext):
        self.id = vu_id
        self.context = context
        self.state = VUState.IDLE
        self.iterations = 0
        self.task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self.state in (VUState.STOPPING, VUState.STOPPED)

    def request_stop(self) -> None:
        """请求停止：完成当前迭代后退出"""
        if self.state is not VUState.STOPPED:
            self.state = VUState.STOPPING
        self._stop_event.set()

    async def wait_stop_requested(self) -> None:
        await self._stop_event.wait()

    def __repr__(self) -> str:
        return f"VirtualUser(id={self.id}, state={self.state.value}, iterations={self.iterations})"


class VirtualUserPool:
    """
    一组各自独立循环的虚拟用户

    每个用户是一个 asyncio 任务：执行迭代、按思考时间暂停、循环往复，
    直到被要求停止。缩容时最新的用户被标记为停止中，它们完成手头的迭代
    后退出。池状态只在事件循环线程中修改，且读写之间不会 await。
    """

    def __init__(
        self,
        iteration_fn: Callable,
        executor: IterationExecutor,
        context_factory: Callable[[int], UserContext],
        clock=None,
        think_time: Optional[ThinkTime] = None,
        on_result: Optional[Callable[[VirtualUser, IterationResult], None]] = None,
        on_population_change: Optional[Callable[[], None]] = None,
        id_source: Optional[Iterator[int]] = None,
        name: str = 'default'
    ):
        self.name = name
        self._iteration_fn = iteration_fn
        self._executor = executor
        self._context_factory = context_factory
        self._clock = clock or MonotonicClock()
        self._think_time = think_time or ThinkTime()
        self._on_result = on_result
        self._on_population_change = on_population_change
        self._ids = id_source or itertools.count(1)
        self._users: Dict[int, VirtualUser] = {}
        self._target = 0
        self.max_active = 0

    @property
    def target(self) -> int:
        return self._target

    def users(self) -> List[VirtualUser]:
        """当前仍在池中的用户"""
        return list(self._users.values())

    def active_count(self) -> int:
        """尚未移除的用户数，包括正在退出的用户"""
        return len(self._users)

    def running_count(self) -> int:
        """未被要求停止的用户数"""
        return sum(1 for user in self._users.values() if not user.stopping)

    def set_target(self, n: int) -> None:
        """
        把循环中的用户数调整到 n

        Args:
            n: 期望的未停止用户数
        """
        if n < 0:
            raise ValueError(f"target must be >= 0, got {n}")
        self._target = n

        running = [user for user in self._users.values() if not user.stopping]
        if len(running) < n:
            for _ in range(n - len(running)):
                self._spawn()
        elif len(running) > n:
            surplus = len(running) - n
            for user in reversed(running[-surplus:]):
                user.request_stop()
            logger.debug("pool %s: retiring %d users (target %d)", self.name, surplus, n)
        else:
            return
        self._population_changed()

    async def stop_all(self) -> None:
        """要求全部用户停止，等所有用户退出后返回"""
        self._target = 0
        while self._users:
            users = list(self._users.values())
            for user in users:
                user.request_stop()
            self._population_changed()
            await self._wait_for([user.task for user in users if user.task is not None])

    async def abort_all(self) -> None:
        """取消全部用户，中断进行中的迭代"""
        self._target = 0
        while self._users:
            users = list(self._users.values())
            for user in users:
                user.request_stop()
                if user.task is not None:
                    user.task.cancel()
            self._population_changed()
            await self._wait_for([user.task for user in users if user.task is not None])

    async def _wait_for(self, tasks: List[asyncio.Task]) -> None:
        if not tasks:
            await asyncio.sleep(0)
            return
        await asyncio.wait(tasks)
        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                logger.error("pool %s: virtual user task crashed", self.name, exc_info=task.exception())
        # 在第一步之前就被取消的任务不会执行到 finally
        for user in list(self._users.values()):
            if user.task is not None and user.task.done():
                user.state = VUState.STOPPED
                self._users.pop(user.id, None)
        self._population_changed()

    def _spawn(self) -> VirtualUser:
        vu_id = next(self._ids)
        user = VirtualUser(vu_id, self._context_factory(vu_id))
        self._users[vu_id] = user
        user.task = asyncio.create_task(self._run_user(user), name=f"vu-{self.name}-{vu_id}")
        self.max_active = max(self.max_active, len(self._users))
        return user

    async def _run_user(self, user: VirtualUser) -> None:
        try:
            while not user.stopping:
                user.state = VUState.RUNNING
                result = await self._executor.run(user.context, self._iteration_fn)
                user.iterations += 1
                if self._on_result is not None:
                    self._on_result(user, result)
                if user.stopping:
                    break
                user.state = VUState.IDLE
                await self._think(user)
        finally:
            user.state = VUState.STOPPED
            self._users.pop(user.id, None)
            self._population_changed()

    async def _think(self, user: VirtualUser) -> None:
        pause = self._think_time.sample()
        if pause <= 0:
            # 不 await 的迭代会饿死事件循环，这里仍要让出一次
            await asyncio.sleep(0)
            return

        sleeper = asyncio.ensure_future(self._clock.sleep(pause))
        stopper = asyncio.ensure_future(user.wait_stop_requested())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()

    def _population_changed(self) -> None:
        if self._on_population_change is not None:
            self._on_population_change()
