#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
错误定义
各引擎模块共用的错误分类
"""

from enum import Enum


class ErrorKind(Enum):
    """单次迭代失败的原因"""
    ITERATION = "iteration"
    TIMEOUT = "timeout"


class AbortReason(Enum):
    """运行在所有阶段结束前终止的原因"""
    ABORT_THRESHOLD = "abort_threshold"
    CANCELLED = "cancelled"
    SETUP_FAILED = "setup_failed"


class LoadTestError(Exception):
    """引擎错误基类"""


class ConfigurationError(LoadTestError, ValueError):
    """
    阶段、阈值、场景绑定或运行选项无效

    总是在任何虚拟用户启动之前抛出
    """


class DuplicateMetricError(ConfigurationError):
    """同名指标被以不同类型再次注册"""

    def __init__(self, name: str, existing: str, requested: str):
        super().__init__(
            f"metric '{name}' is already registered as {existing}, cannot register it as {requested}"
        )
        self.name = name
        self.existing = existing
        self.requested = requested


class InvalidThresholdError(ConfigurationError):
    """阈值表达式格式错误，或无法作用于对应指标"""


class UnknownMetricError(LoadTestError, KeyError):
    """向未注册的指标提交了观测值"""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"unknown metric '{self.name}'"


class IterationError(LoadTestError):
    """场景代码抛出，使当前迭代失败"""


class IterationTimeout(IterationError):
    """迭代未在配置的时限内完成"""

    def __init__(self, timeout: float):
        super().__init__(f"iteration exceeded {timeout:g}s timeout")
        self.timeout = timeout
