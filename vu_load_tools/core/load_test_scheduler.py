#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
阶段调度器
把爬坡阶段换算成随时间变化的目标用户数，并驱动用户池
"""

import inspect
import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .load_test_errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage:
    """在 duration 秒内线性爬坡到 target 个用户"""
    duration: float
    target: int

    def __post_init__(self):
        if isinstance(self.duration, bool) or not isinstance(self.duration, (int, float)):
            raise ConfigurationError(f"stage duration must be a number of seconds, got {self.duration!r}")
        if self.duration < 0 or math.isnan(self.duration):
            raise ConfigurationError(f"stage duration must be >= 0, got {self.duration}")
        if isinstance(self.target, bool) or not isinstance(self.target, int) or self.target < 0:
            raise ConfigurationError(f"stage target must be a non-negative integer, got {self.target!r}")


def total_duration(stages: Sequence[Stage]) -> float:
    """全部阶段的总时长（秒）"""
    return sum(stage.duration for stage in stages)


def _stage_ends(stages: Sequence[Stage]) -> List[float]:
    ends = []
    elapsed = 0.0
    for stage in stages:
        elapsed += stage.duration
        ends.append(elapsed)
    return ends


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def target_at(stages: Sequence[Stage], elapsed: float, start_vus: int = 0) -> int:
    """
    计算经过 elapsed 秒后的目标用户数

    第一个阶段从 start_vus 开始爬坡，其余阶段从上一阶段的目标开始。
    零时长阶段直接跳到其目标。恰好处于阶段边界时结果等于该阶段的目标；
    超过最后一个阶段后保持最后的目标。

    Args:
        stages: 有序的爬坡阶段
        elapsed: 阶段开始后经过的秒数
        start_vus: 第一个阶段之前的用户数

    Returns:
        目标用户数，四舍五入（0.5 向上）
    """
    elapsed = max(0.0, elapsed)
    previous = start_vus
    stage_start = 0.0
    for stage in stages:
        stage_end = stage_start + stage.duration
        if elapsed < stage_end:
            fraction = (elapsed - stage_start) / stage.duration
            return _round_half_up(previous + (stage.target - previous) * fraction)
        previous = stage.target
        stage_start = stage_end
    return previous


class StageScheduler:
    """
    按固定节拍遍历阶段，使用户池保持在插值目标上

    Args:
        tick_interval: 两次目标更新之间的秒数
        start_vus: 第一个阶段之前的用户数
        on_stage_boundary: 每个阶段结束时以阶段下标调用；可以是协程函数
        should_stop: 每个节拍后轮询；返回 True 时提前结束运行，不等待用户池退出
    """

    def __init__(
        self,
        tick_interval: float = 1.0,
        start_vus: int = 0,
        on_stage_boundary: Optional[Callable[[int], object]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        name: str = 'default'
    ):
        if tick_interval <= 0:
            raise ConfigurationError(f"tick interval must be > 0, got {tick_interval}")
        if start_vus < 0:
            raise ConfigurationError(f"startVUs must be >= 0, got {start_vus}")
        self.tick_interval = tick_interval
        self.start_vus = start_vus
        self.on_stage_boundary = on_stage_boundary
        self.should_stop = should_stop
        self.name = name

    def _next_wait(self, elapsed: float, ends: Sequence[float]) -> float:
        wait = self.tick_interval
        for end in ends:
            if end > elapsed:
                wait = min(wait, end - elapsed)
                break
        return wait

    def plan(self, stages: Sequence[Stage]) -> List[Tuple[float, int]]:
        """不等待，直接返回 run() 会应用的 (elapsed, target) 序列"""
        ends = _stage_ends(stages)
        total = total_duration(stages)
        elapsed = 0.0
        points = []
        while True:
            points.append((elapsed, target_at(stages, elapsed, self.start_vus)))
            if elapsed >= total:
                return points
            elapsed += self._next_wait(elapsed, ends)

    async def run(self, stages: Sequence[Stage], pool, clock) -> bool:
        """
        驱动用户池走完全部阶段

        Args:
            stages: 有序的爬坡阶段；空列表时用户池被设为 start_vus 后立即退出
            pool: 提供 set_target(n) 和协程 stop_all() 的对象
            clock: 提供 now() 和协程 sleep() 的时间源

        Returns:
            全部阶段结束且用户池退出后返回 True；should_stop 提前结束时返回 False
        """
        stages = list(stages)
        ends = _stage_ends(stages)
        total = total_duration(stages)
        started = clock.now()
        next_end = 0

        logger.info("scheduler %s: %d stages over %.1fs", self.name, len(stages), total)
        while True:
            elapsed = clock.now() - started
            pool.set_target(target_at(stages, elapsed, self.start_vus))

            while next_end < len(ends) and elapsed >= ends[next_end]:
                logger.info("scheduler %s: stage %d finished at %.1fs (target %d)",
                            self.name, next_end + 1, elapsed, stages[next_end].target)
                if self.on_stage_boundary is not None:
                    outcome = self.on_stage_boundary(next_end)
                    if inspect.isawaitable(outcome):
                        await outcome
                next_end += 1

            if self.should_stop is not None and self.should_stop():
                logger.info("scheduler %s: stopped early at %.1fs", self.name, elapsed)
                return False
            if elapsed >= total:
                break
            await clock.sleep(self._next_wait(elapsed, ends))

        await pool.stop_all()
        return True
