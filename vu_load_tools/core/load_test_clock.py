#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
时间源
调度器、用户池和思考时间共用的真实时钟与模拟时钟
"""

import asyncio
import time


class MonotonicClock:
    """基于 time.monotonic() 的真实时钟，sleep 会真正等待"""

    def now(self) -> float:
        """当前时间（秒）"""
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        """等待指定秒数，负数按 0 处理"""
        await asyncio.sleep(max(0.0, seconds))


class SimulatedClock:
    """
    模拟时钟，只有 sleep 时才会前进

    sleep() 直接把时间推进请求的秒数，并让出一次事件循环，
    因此整条爬坡曲线无需真实等待即可走完。适用于单个等待方
    （调度器试运行）；多个协程同时 sleep 时各自推进时钟。
    """

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        """当前模拟时间（秒）"""
        return self._now

    def advance(self, seconds: float) -> None:
        """手动推进时钟"""
        self._now += max(0.0, seconds)

    async def sleep(self, seconds: float) -> None:
        """推进时钟并让出一次事件循环"""
        self.advance(seconds)
        await asyncio.sleep(0)
