#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
指标注册表
所有虚拟用户共享的计数器、比率、趋势和仪表指标
"""

import logging
import math
import random
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from .load_test_errors import ConfigurationError, DuplicateMetricError, UnknownMetricError

logger = logging.getLogger(__name__)


class MetricKind(Enum):
    """指标类型"""
    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


# 内置指标名称
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATION_FAILED = "iteration_failed"
INTERRUPTED_ITERATIONS = "interrupted_iterations"
CHECKS = "checks"
VUS = "vus"
VUS_MAX = "vus_max"
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"

BUILTIN_METRICS: Tuple[Tuple[str, MetricKind, bool], ...] = (
    (ITERATIONS, MetricKind.COUNTER, False),
    (ITERATION_DURATION, MetricKind.TREND, True),
    (ITERATION_FAILED, MetricKind.RATE, False),
    (INTERRUPTED_ITERATIONS, MetricKind.COUNTER, False),
    (CHECKS, MetricKind.RATE, False),
    (VUS, MetricKind.GAUGE, False),
    (VUS_MAX, MetricKind.GAUGE, False),
    (HTTP_REQS, MetricKind.COUNTER, False),
    (HTTP_REQ_DURATION, MetricKind.TREND, True),
    (HTTP_REQ_FAILED, MetricKind.RATE, False),
)

# 各类型支持的聚合方式；"p" 需要百分位参数
SUPPORTED_AGGREGATES: Dict[MetricKind, frozenset] = {
    MetricKind.COUNTER: frozenset({'count', 'rate'}),
    MetricKind.RATE: frozenset({'rate'}),
    MetricKind.TREND: frozenset({'avg', 'min', 'max', 'med', 'p', 'count'}),
    MetricKind.GAUGE: frozenset({'value', 'min', 'max'}),
}


def percentile(sorted_samples, p: float) -> Optional[float]:
    """
    计算已排序样本的百分位数

    在最接近的两个秩之间线性插值，rank = p / 100 * (n - 1)

    Args:
        sorted_samples: 升序排列的样本
        p: 百分位，取值 [0, 100]

    Returns:
        插值结果；没有样本时返回 None
    """
    if not 0 <= p <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {p}")
    n = len(sorted_samples)
    if n == 0:
        return None
    if n == 1:
        return float(sorted_samples[0])

    rank = p / 100.0 * (n - 1)
    lower = int(math.floor(rank))
    upper = min(lower + 1, n - 1)
    fraction = rank - lower
    return sorted_samples[lower] + (sorted_samples[upper] - sorted_samples[lower]) * fraction


# ==================== 快照 ====================

@dataclass(frozen=True)
class CounterSnapshot:
    """计数器快照"""
    name: str
    count: float
    elapsed: float = 0.0
    contains_time: bool = False

    kind = MetricKind.COUNTER

    @property
    def rate(self) -> float:
        """每秒计数（按运行时长）"""
        return self.count / self.elapsed if self.elapsed > 0 else 0.0

    def aggregate(self, name: str, argument: Optional[float] = None) -> Optional[float]:
        """按名称取聚合值"""
        if name == 'count':
            return float(self.count)
        if name == 'rate':
            return self.rate
        raise ValueError(f"counter does not support '{name}'")

    def to_dict(self) -> Dict:
        """转换为报告用字典"""
        return {'type': self.kind.value, 'count': self.count, 'rate': self.rate}


@dataclass(frozen=True)
class RateSnapshot:
    """比率快照：真值次数 / 总次数"""
    name: str
    passes: int
    total: int
    contains_time: bool = False

    kind = MetricKind.RATE

    @property
    def fails(self) -> int:
        return self.total - self.passes

    @property
    def rate(self) -> float:
        """没有观测值时为 0"""
        return self.passes / self.total if self.total else 0.0

    def aggregate(self, name: str, argument: Optional[float] = None) -> Optional[float]:
        """按名称取聚合值"""
        if name == 'rate':
            return self.rate
        raise ValueError(f"rate does not support '{name}'")

    def to_dict(self) -> Dict:
        """转换为报告用字典"""
        return {'type': self.kind.value, 'rate': self.rate, 'passes': self.passes, 'fails': self.fails}


@dataclass(frozen=True)
class TrendSnapshot:
    """
    趋势指标在快照时刻的分布

    count/total/min/max 始终精确；趋势设置了样本上限时 samples 是蓄水池抽样，
    此时中位数和百分位为估计值。
    """
    name: str
    count: int
    total: float
    minimum: Optional[float]
    maximum: Optional[float]
    samples: Tuple[float, ...]
    contains_time: bool = False

    kind = MetricKind.TREND

    @property
    def avg(self) -> Optional[float]:
        return self.total / self.count if self.count else None

    @property
    def min(self) -> Optional[float]:
        return self.minimum

    @property
    def max(self) -> Optional[float]:
        return self.maximum

    @property
    def med(self) -> Optional[float]:
        return self.percentile(50)

    def percentile(self, p: float) -> Optional[float]:
        """第 p 百分位"""
        return percentile(self.samples, p)

    def aggregate(self, name: str, argument: Optional[float] = None) -> Optional[float]:
        """
        按名称取聚合值

        Args:
            name: avg、min、max、med、count 或 p
            argument: name 为 p 时的百分位

        Returns:
            聚合值；没有样本时为 None
        """
        if name == 'p':
            return self.percentile(argument)
        if name == 'count':
            return float(self.count)
        if name in ('avg', 'min', 'max', 'med'):
            return getattr(self, name)
        raise ValueError(f"trend does not support '{name}'")

    def to_dict(self) -> Dict:
        """转换为报告用字典"""
        return {
            'type': self.kind.value,
            'count': self.count,
            'avg': self.avg,
            'min': self.min,
            'med': self.med,
            'max': self.max,
            'p(90)': self.percentile(90),
            'p(95)': self.percentile(95),
            'p(99)': self.percentile(99),
        }


@dataclass(frozen=True)
class GaugeSnapshot:
    """仪表快照：最新值及历史最小/最大值"""
    name: str
    value: Optional[float]
    minimum: Optional[float]
    maximum: Optional[float]
    contains_time: bool = False

    kind = MetricKind.GAUGE

    def aggregate(self, name: str, argument: Optional[float] = None) -> Optional[float]:
        """按名称取聚合值"""
        if name == 'value':
            return self.value
        if name == 'min':
            return self.minimum
        if name == 'max':
            return self.maximum
        raise ValueError(f"gauge does not support '{name}'")

    def to_dict(self) -> Dict:
        """转换为报告用字典"""
        return {'type': self.kind.value, 'value': self.value, 'min': self.minimum, 'max': self.maximum}


class MetricsSnapshot(Mapping):
    """全部指标的只读视图，以名称为键"""

    def __init__(self, metrics: Dict[str, object], elapsed: float = 0.0):
        self._metrics = dict(metrics)
        self.elapsed = elapsed

    def __getitem__(self, name: str):
        return self._metrics[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._metrics)

    def __len__(self) -> int:
        return len(self._metrics)

    def to_dict(self) -> Dict[str, Dict]:
        """按名称排序的报告用字典"""
        return {name: metric.to_dict() for name, metric in sorted(self._metrics.items())}


# ==================== 累加器 ====================

class Metric:
    """累加器基类；每个指标用自己的锁串行化写入"""

    kind: MetricKind

    def __init__(self, name: str, contains_time: bool = False):
        self.name = name
        self.contains_time = contains_time
        self._lock = threading.Lock()

    def add(self, value) -> None:
        """记录一个观测值"""
        raise NotImplementedError

    def snapshot(self, elapsed: float = 0.0):
        """返回当前状态的一致副本"""
        raise NotImplementedError


class Counter(Metric):
    """只增不减的累计值"""

    kind = MetricKind.COUNTER

    def __init__(self, name: str, contains_time: bool = False):
        super().__init__(name, contains_time)
        self._value = 0

    def add(self, value=1) -> None:
        """累加；负数视为错误"""
        if value < 0:
            raise ValueError(f"counter '{self.name}' cannot decrease (got {value})")
        with self._lock:
            self._value += value

    @property
    def value(self):
        return self._value

    def snapshot(self, elapsed: float = 0.0) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(self.name, self._value, elapsed, self.contains_time)


class Rate(Metric):
    """真值观测占全部观测的比例"""

    kind = MetricKind.RATE

    def __init__(self, name: str, contains_time: bool = False):
        super().__init__(name, contains_time)
        self._passes = 0
        self._total = 0

    def add(self, value) -> None:
        """按真假计数"""
        with self._lock:
            self._total += 1
            if value:
                self._passes += 1

    def snapshot(self, elapsed: float = 0.0) -> RateSnapshot:
        with self._lock:
            return RateSnapshot(self.name, self._passes, self._total, self.contains_time)


class Trend(Metric):
    """
    数值分布

    未设置 sample_cap 时保留全部样本：百分位精确，但内存为 O(n)，每次快照
    需要 O(n log n) 排序。设置上限后使用均匀蓄水池抽样（Algorithm R），
    最多保留 sample_cap 个样本，百分位变为估计值。count、sum、min、max
    在两种情况下都保持精确。
    """

    kind = MetricKind.TREND

    def __init__(self, name: str, contains_time: bool = False, sample_cap: Optional[int] = None,
                 rng: Optional[random.Random] = None):
        super().__init__(name, contains_time)
        if sample_cap is not None and sample_cap < 1:
            raise ConfigurationError(f"trend sample cap must be >= 1, got {sample_cap}")
        self.sample_cap = sample_cap
        self._random = rng or random.Random()
        self._samples: List[float] = []
        self._count = 0
        self._total = 0.0
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    def add(self, value) -> None:
        """记录一个样本，更新精确统计并维护蓄水池"""
        value = float(value)
        with self._lock:
            self._count += 1
            self._total += value
            if self._min is None or value < self._min:
                self._min = value
            if self._max is None or value > self._max:
                self._max = value

            if self.sample_cap is None or len(self._samples) < self.sample_cap:
                self._samples.append(value)
            else:
                slot = self._random.randrange(self._count)
                if slot < self.sample_cap:
                    self._samples[slot] = value

    def snapshot(self, elapsed: float = 0.0) -> TrendSnapshot:
        """复制样本后在锁外排序"""
        with self._lock:
            samples = list(self._samples)
            count, total, low, high = self._count, self._total, self._min, self._max
        samples.sort()
        return TrendSnapshot(self.name, count, total, low, high, tuple(samples), self.contains_time)


class Gauge(Metric):
    """最新值，同时记录最小/最大值"""

    kind = MetricKind.GAUGE

    def __init__(self, name: str, contains_time: bool = False):
        super().__init__(name, contains_time)
        self._value: Optional[float] = None
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    def add(self, value) -> None:
        with self._lock:
            self._value = value
            if self._min is None or value < self._min:
                self._min = value
            if self._max is None or value > self._max:
                self._max = value

    def snapshot(self, elapsed: float = 0.0) -> GaugeSnapshot:
        with self._lock:
            return GaugeSnapshot(self.name, self._value, self._min, self._max, self.contains_time)


class MetricRegistry:
    """
    一次运行的命名指标集合

    注册表的锁只保护注册过程；观测值直接写入指标，由指标自己的锁保护。
    """

    def __init__(self, trend_sample_cap: Optional[int] = None):
        self.trend_sample_cap = trend_sample_cap
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def register(self, name: str, kind, contains_time: bool = False) -> Metric:
        """
        创建指标；同名同类型时返回已有指标

        Args:
            name: 指标名称，运行内唯一
            kind: MetricKind 或其字符串值（"counter"、"rate" 等）
            contains_time: 值是否为毫秒时长

        Returns:
            注册后的指标

        Raises:
            DuplicateMetricError: 名称已以其他类型注册
            ConfigurationError: 名称为空或类型未知
        """
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"metric name must be a non-empty string, got {name!r}")
        try:
            kind = MetricKind(kind)
        except ValueError:
            raise ConfigurationError(f"unknown metric kind {kind!r} for '{name}'") from None

        existing = self._metrics.get(name)
        if existing is not None and existing.kind is kind:
            return existing

        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if existing.kind is not kind:
                    raise DuplicateMetricError(name, existing.kind.value, kind.value)
                return existing

            if kind is MetricKind.TREND:
                metric = Trend(name, contains_time, sample_cap=self.trend_sample_cap)
            elif kind is MetricKind.COUNTER:
                metric = Counter(name, contains_time)
            elif kind is MetricKind.RATE:
                metric = Rate(name, contains_time)
            else:
                metric = Gauge(name, contains_time)
            self._metrics[name] = metric

        logger.debug("registered %s metric '%s'", kind.value, name)
        return metric

    def observe(self, name: str, value) -> None:
        """
        向已注册指标提交观测值

        Raises:
            UnknownMetricError: 指标未注册
        """
        metric = self._metrics.get(name)
        if metric is None:
            raise UnknownMetricError(name)
        metric.add(value)

    def get(self, name: str) -> Metric:
        """按名称取指标，未注册时抛出 UnknownMetricError"""
        metric = self._metrics.get(name)
        if metric is None:
            raise UnknownMetricError(name)
        return metric

    def names(self) -> List[str]:
        return sorted(self._metrics)

    def __contains__(self, name) -> bool:
        return name in self._metrics

    def __len__(self) -> int:
        return len(self._metrics)

    def snapshot(self, elapsed: float = 0.0) -> MetricsSnapshot:
        """逐指标一致的全部指标副本"""
        with self._lock:
            metrics = list(self._metrics.values())
        return MetricsSnapshot({metric.name: metric.snapshot(elapsed) for metric in metrics}, elapsed)


def register_builtin_metrics(registry: MetricRegistry) -> MetricRegistry:
    """
    注册全部内置指标

    Args:
        registry: 指标注册表

    Returns:
        同一个注册表
    """
    for name, kind, contains_time in BUILTIN_METRICS:
        registry.register(name, kind, contains_time=contains_time)
    return registry
