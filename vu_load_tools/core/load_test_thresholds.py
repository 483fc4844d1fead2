#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
阈值评估
一次性解析 "p(95)<2000" 这类表达式，并用指标快照检验
"""

import logging
import operator
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .load_test_config import parse_duration
from .load_test_errors import ConfigurationError, InvalidThresholdError
from .load_test_metrics import SUPPORTED_AGGREGATES, MetricRegistry

logger = logging.getLogger(__name__)


class AggregatorKind(Enum):
    """阈值表达式左侧的聚合方式"""
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    MED = "med"
    PERCENTILE = "p"
    COUNT = "count"
    RATE = "rate"
    VALUE = "value"


@dataclass(frozen=True)
class Aggregator:
    kind: AggregatorKind
    percentile: Optional[float] = None

    def __str__(self) -> str:
        if self.kind is AggregatorKind.PERCENTILE:
            return f"p({self.percentile:g})"
        return self.kind.value


class Comparator(Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="

    def apply(self, observed: float, limit: float) -> bool:
        """observed 与 limit 比较"""
        return _OPERATORS[self](observed, limit)


_OPERATORS = {
    Comparator.LT: operator.lt,
    Comparator.LE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GE: operator.ge,
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
}

_PREDICATE = re.compile(
    r'^\s*(?P<agg>avg|min|max|med|count|rate|value|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))'
    r'\s*(?P<op><=|>=|==|!=|<|>)'
    r'\s*(?P<limit>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)\s*$'
)


@dataclass(frozen=True)
class Threshold:
    """解析后的阈值"""
    metric_name: str
    aggregator: Aggregator
    comparator: Comparator
    limit: float
    source: str
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    def __str__(self) -> str:
        return f"{self.metric_name}: {self.source}"


@dataclass(frozen=True)
class ThresholdOutcome:
    """单个阈值的评估结果"""
    threshold: Threshold
    passed: bool
    observed_value: Optional[float]

    def to_dict(self) -> Dict:
        """转换为报告用字典"""
        return {
            'metric': self.threshold.metric_name,
            'threshold': self.threshold.source,
            'abort_on_fail': self.threshold.abort_on_fail,
            'passed': self.passed,
            'observed_value': self.observed_value,
        }


def parse_predicate(text: str) -> Tuple[Aggregator, Comparator, float]:
    """
    把表达式拆分为聚合方式、比较符和限值

    Args:
        text: 如 "p(95) < 2000"、"rate<0.1"、"avg<=250.5"

    Returns:
        (aggregator, comparator, limit)

    Raises:
        InvalidThresholdError: 表达式不符合语法
    """
    if not isinstance(text, str):
        raise InvalidThresholdError(f"threshold predicate must be a string, got {text!r}")
    match = _PREDICATE.match(text)
    if match is None:
        raise InvalidThresholdError(f"malformed threshold predicate '{text}'")

    agg = match.group('agg')
    if match.group('pct') is not None:
        pct = float(match.group('pct'))
        if pct > 100:
            raise InvalidThresholdError(f"percentile must be within [0, 100] in '{text}'")
        aggregator = Aggregator(AggregatorKind.PERCENTILE, pct)
    else:
        aggregator = Aggregator(AggregatorKind(agg))

    return aggregator, Comparator(match.group('op')), float(match.group('limit'))


def parse_threshold(metric_name: str, entry, registry: Optional[MetricRegistry] = None) -> Threshold:
    """
    解析单个阈值条目

    Args:
        metric_name: 指标名称
        entry: 表达式字符串，或包含 "threshold"、"abortOnFail"、
            "delayAbortEval" 的字典
        registry: 给定时，指标必须已注册且支持该聚合方式

    Returns:
        Threshold

    Raises:
        InvalidThresholdError: 条目无效
    """
    abort_on_fail = False
    delay_abort_eval = 0.0
    if isinstance(entry, Mapping):
        if 'threshold' not in entry:
            raise InvalidThresholdError(f"threshold object for '{metric_name}' is missing 'threshold'")
        text = entry['threshold']
        abort_on_fail = bool(entry.get('abortOnFail', entry.get('abort_on_fail', False)))
        try:
            delay_abort_eval = parse_duration(entry.get('delayAbortEval', entry.get('delay_abort_eval', 0)))
        except ConfigurationError as exc:
            raise InvalidThresholdError(f"invalid delayAbortEval for '{metric_name}': {exc}") from None
    else:
        text = entry

    aggregator, comparator, limit = parse_predicate(text)

    if registry is not None:
        if metric_name not in registry:
            raise InvalidThresholdError(f"threshold references unknown metric '{metric_name}'")
        kind = registry.get(metric_name).kind
        if aggregator.kind.value not in SUPPORTED_AGGREGATES[kind]:
            raise InvalidThresholdError(
                f"'{aggregator}' cannot be applied to {kind.value} metric '{metric_name}'"
            )

    return Threshold(metric_name, aggregator, comparator, limit, text.strip(), abort_on_fail, delay_abort_eval)


def parse_thresholds(config: Mapping, registry: Optional[MetricRegistry] = None) -> List[Threshold]:
    """
    解析阈值配置：指标名 -> 表达式或表达式列表

    Args:
        config: 阈值配置
        registry: 用于校验指标的注册表

    Returns:
        Threshold 列表

    Raises:
        InvalidThresholdError: 遇到第一个无效条目时抛出
    """
    if config is None:
        return []
    if not isinstance(config, Mapping):
        raise InvalidThresholdError(f"thresholds must be a mapping of metric name to predicates, got {config!r}")

    thresholds = []
    for metric_name, entries in config.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        elif not isinstance(entries, (list, tuple)):
            raise InvalidThresholdError(f"thresholds for '{metric_name}' must be a predicate or a list, got {entries!r}")
        for entry in entries:
            thresholds.append(parse_threshold(metric_name, entry, registry))
    return thresholds


def evaluate(thresholds: Sequence[Threshold], snapshot: Mapping) -> List[ThresholdOutcome]:
    """
    用指标快照检验每个阈值

    没有观测值的指标（聚合结果为 None）视为通过。

    Args:
        thresholds: 待检验的阈值
        snapshot: 指标快照

    Returns:
        与 thresholds 顺序一致的 ThresholdOutcome 列表
    """
    outcomes = []
    for threshold in thresholds:
        metric = snapshot.get(threshold.metric_name)
        observed = None
        if metric is not None:
            observed = metric.aggregate(threshold.aggregator.kind.value, threshold.aggregator.percentile)
        passed = observed is None or threshold.comparator.apply(observed, threshold.limit)
        outcomes.append(ThresholdOutcome(threshold, passed, observed))
    return outcomes


class ThresholdEvaluator:
    """保存一次运行的已解析阈值"""

    def __init__(self, thresholds: Sequence[Threshold] = ()):
        self.thresholds: Tuple[Threshold, ...] = tuple(thresholds)

    @property
    def abort_thresholds(self) -> Tuple[Threshold, ...]:
        """设置了 abortOnFail 的阈值"""
        return tuple(t for t in self.thresholds if t.abort_on_fail)

    def evaluate(self, snapshot: Mapping) -> List[ThresholdOutcome]:
        """检验全部阈值"""
        return evaluate(self.thresholds, snapshot)

    def failed_abort_thresholds(self, snapshot: Mapping, elapsed: float) -> List[ThresholdOutcome]:
        """
        已过 delayAbortEval 且未通过的 abortOnFail 阈值

        Args:
            snapshot: 指标快照
            elapsed: 运行已持续的秒数

        Returns:
            未通过的结果；为空表示无需终止
        """
        due = [t for t in self.abort_thresholds if elapsed >= t.delay_abort_eval]
        failed = [outcome for outcome in evaluate(due, snapshot) if not outcome.passed]
        for outcome in failed:
            logger.warning("abort threshold failed: %s (observed %s)", outcome.threshold, outcome.observed_value)
        return failed
