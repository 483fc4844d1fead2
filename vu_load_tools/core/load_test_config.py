#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置管理模块
负责配置文件的加载、验证和合并，并把场景绑定到脚本函数
"""

import json
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml

from .load_test_errors import ConfigurationError
from .load_test_executor import Scenario
from .load_test_pool import ThinkTime
from .load_test_scheduler import Stage, total_duration

EXECUTOR_CONSTANT_VUS = 'constant-vus'
EXECUTOR_RAMPING_VUS = 'ramping-vus'
EXECUTORS = (EXECUTOR_CONSTANT_VUS, EXECUTOR_RAMPING_VUS)

# 描述隐式 "default" 场景的键
SHORTCUT_KEYS = ('vus', 'duration', 'stages', 'startVUs')

_NUMBER = re.compile(r'^\d+(?:\.\d+)?$')
_DURATION = re.compile(r'^(?:\d+(?:\.\d+)?(?:ms|s|m|h))+$')
_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
_UNIT_SECONDS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


def parse_duration(value) -> float:
    """
    把时长转换为秒

    Args:
        value: 数字（秒），或 "500ms"、"30s"、"2m"、"1h"、"1m30s" 这样的
            字符串；None 表示 0

    Returns:
        秒数（float）

    Raises:
        ConfigurationError: 负数或无法解析
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        if value < 0 or math.isnan(value):
            raise ConfigurationError(f"duration must be >= 0, got {value}")
        return float(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if _NUMBER.match(text):
            return float(text)
        if _DURATION.match(text):
            return sum(float(amount) * _UNIT_SECONDS[unit] for amount, unit in _DURATION_PART.findall(text))
    raise ConfigurationError(f"invalid duration {value!r}")


def parse_stages(raw) -> Tuple[Stage, ...]:
    """由 [{"duration": "30s", "target": 10}, ...] 构造 Stage"""
    if raw is None:
        return ()
    if isinstance(raw, (str, bytes, Mapping)):
        raise ConfigurationError(f"stages must be a list, got {raw!r}")
    stages = []
    for index, item in enumerate(raw):
        if isinstance(item, Stage):
            stages.append(item)
            continue
        if not isinstance(item, Mapping) or 'target' not in item:
            raise ConfigurationError(f"stage {index + 1} must have a duration and a target, got {item!r}")
        stages.append(Stage(parse_duration(item.get('duration')), item['target']))
    return tuple(stages)


def _non_negative_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative integer, got {value!r}")
    return value


@dataclass(frozen=True)
class ScenarioConfig:
    """
    一个命名的负载

    constant-vus 在 duration 秒内保持 vus 个用户；ramping-vus 从 start_vus
    开始，按 stages 爬坡。
    """
    name: str
    fn: Callable
    exec_name: str = 'default'
    executor: str = EXECUTOR_CONSTANT_VUS
    vus: int = 1
    duration: float = 0.0
    start_vus: int = 0
    stages: Tuple[Stage, ...] = ()
    tags: Dict[str, str] = field(default_factory=dict)
    start_time: float = 0.0
    think_time: ThinkTime = field(default_factory=ThinkTime)
    iteration_timeout: Optional[float] = None

    def ramp(self) -> Tuple[int, Tuple[Stage, ...]]:
        """
        交给阶段调度器的 (start_vus, stages)

        Raises:
            ConfigurationError: ramping-vus 没有任何阶段
        """
        if self.executor == EXECUTOR_CONSTANT_VUS:
            return self.vus, (Stage(self.duration, self.vus),)
        if not self.stages:
            raise ConfigurationError(f"scenario '{self.name}': ramping-vus needs at least one stage")
        return self.start_vus, self.stages

    @property
    def total_duration(self) -> float:
        """含 startTime 的场景总时长"""
        return self.start_time + total_duration(self.ramp()[1])


@dataclass(frozen=True)
class LoadTestOptions:
    """校验后的运行选项；阈值保持原样，待指标注册后再解析"""
    scenarios: Tuple[ScenarioConfig, ...]
    thresholds: Mapping[str, Any] = field(default_factory=dict)
    setup: Optional[Callable] = None
    teardown: Optional[Callable] = None
    metrics: Mapping[str, str] = field(default_factory=dict)
    checks: Tuple[str, ...] = ()
    url: Optional[str] = None
    timeout: float = 5.0
    tick_interval: float = 1.0
    abort_check_interval: float = 5.0
    trend_sample_cap: Optional[int] = None

    @property
    def total_duration(self) -> float:
        """最长场景的时长"""
        return max((scenario.total_duration for scenario in self.scenarios), default=0.0)

    def describe(self) -> Dict[str, Any]:
        """报告用的扁平摘要"""
        return {
            'url': self.url,
            'scenarios': {
                scenario.name: {
                    'executor': scenario.executor,
                    'exec': scenario.exec_name,
                    'vus': scenario.vus if scenario.executor == EXECUTOR_CONSTANT_VUS else None,
                    'start_vus': scenario.start_vus if scenario.executor == EXECUTOR_RAMPING_VUS else None,
                    'stages': [[stage.duration, stage.target] for stage in scenario.stages],
                    'duration': scenario.total_duration,
                }
                for scenario in self.scenarios
            },
            'thresholds': dict(self.thresholds),
            'duration': self.total_duration,
        }


def load_config(config_path: str) -> Dict:
    """
    加载配置文件

    Args:
        config_path: .json、.yml 或 .yaml 文件路径

    Returns:
        配置字典；文件不存在时返回 {}

    Raises:
        ConfigurationError: 文件无法读取或解析
    """
    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            if config_path.endswith(('.yml', '.yaml')):
                config = yaml.safe_load(f) or {}
            else:
                config = json.load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot read config file {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"config file {config_path} must contain a mapping")
    return config


def validate_config(config: Dict) -> bool:
    """
    验证配置完整性

    Args:
        config: 配置字典

    Returns:
        是否有效

    Raises:
        ConfigurationError: 验证失败时抛出
    """
    scenarios = config.get('scenarios')

    # 互斥参数检查
    if scenarios and config.get('stages'):
        raise ConfigurationError("scenarios and stages cannot both be set")
    if config.get('stages') and config.get('duration'):
        raise ConfigurationError("stages and duration cannot both be set")

    if scenarios:
        if not isinstance(scenarios, Mapping):
            raise ConfigurationError("scenarios must be a mapping of scenario name to settings")
        for name, scenario in scenarios.items():
            _validate_scenario(name, scenario)
    else:
        if not config.get('stages') and not config.get('duration'):
            raise ConfigurationError("either duration, stages or scenarios must be set")
        _validate_scenario('default', {
            'executor': EXECUTOR_RAMPING_VUS if config.get('stages') else EXECUTOR_CONSTANT_VUS,
            **{key: config[key] for key in SHORTCUT_KEYS if key in config},
        })

    ThinkTime.from_value(config.get('thinkTime'))
    for key in ('iterationTimeout', 'timeout'):
        if config.get(key) is not None and parse_duration(config[key]) <= 0:
            raise ConfigurationError(f"{key} must be > 0")
    for key in ('tickInterval', 'abortCheckInterval'):
        if key in config and parse_duration(config[key]) <= 0:
            raise ConfigurationError(f"{key} must be > 0")
    if config.get('trendSampleCap') is not None:
        cap = config['trendSampleCap']
        if isinstance(cap, bool) or not isinstance(cap, int) or cap < 1:
            raise ConfigurationError(f"trendSampleCap must be a positive integer, got {cap!r}")
    if config.get('thresholds') is not None and not isinstance(config['thresholds'], Mapping):
        raise ConfigurationError("thresholds must be a mapping of metric name to predicates")

    return True


def _validate_scenario(name: str, scenario) -> None:
    if not isinstance(scenario, Mapping):
        raise ConfigurationError(f"scenario '{name}' must be a mapping")

    executor = scenario.get('executor', EXECUTOR_CONSTANT_VUS)
    if executor not in EXECUTORS:
        raise ConfigurationError(f"scenario '{name}': unsupported executor '{executor}'")

    if executor == EXECUTOR_CONSTANT_VUS:
        if 'stages' in scenario:
            raise ConfigurationError(f"scenario '{name}': constant-vus does not take stages")
        if 'duration' not in scenario:
            raise ConfigurationError(f"scenario '{name}': constant-vus needs a duration")
        _non_negative_int(scenario.get('vus', 1), f"scenario '{name}' vus")
        parse_duration(scenario['duration'])
    else:
        if 'duration' in scenario:
            raise ConfigurationError(f"scenario '{name}': ramping-vus takes stages, not duration")
        _non_negative_int(scenario.get('startVUs', 0), f"scenario '{name}' startVUs")
        if not parse_stages(scenario.get('stages')):
            raise ConfigurationError(f"scenario '{name}': ramping-vus needs at least one stage")

    parse_duration(scenario.get('startTime'))
    ThinkTime.from_value(scenario.get('thinkTime'))
    if scenario.get('iterationTimeout') is not None and parse_duration(scenario['iterationTimeout']) <= 0:
        raise ConfigurationError(f"scenario '{name}': iterationTimeout must be > 0")
    if scenario.get('tags') is not None and not isinstance(scenario['tags'], Mapping):
        raise ConfigurationError(f"scenario '{name}': tags must be a mapping")


def merge_config(
    file_config: Dict,
    cli_config: Dict,
    defaults: Dict
) -> Dict:
    """
    合并配置：默认值 -> 配置文件 -> 命令行参数

    后一层中描述负载形状的键会删除前面各层与之冲突的键：vus/duration
    替换 stages 和 scenarios，stages 替换 duration 和 scenarios，
    scenarios 替换全部快捷键。

    Args:
        file_config: 从配置文件读取的配置
        cli_config: 命令行实际给出的参数
        defaults: 默认配置

    Returns:
        合并后的配置
    """
    merged = defaults.copy()
    for layer in (file_config, cli_config):
        for key, conflicts in _WORKLOAD_CONFLICTS.items():
            if key in layer:
                for conflict in conflicts:
                    merged.pop(conflict, None)
        merged.update(layer)
    return merged


_WORKLOAD_CONFLICTS = {
    'vus': ('stages', 'startVUs', 'scenarios'),
    'duration': ('stages', 'startVUs', 'scenarios'),
    'stages': ('duration', 'scenarios'),
    'scenarios': SHORTCUT_KEYS,
}


def get_default_config() -> Dict:
    """
    获取默认配置

    Returns:
        默认配置字典
    """
    return {
        'vus': 1,
        'timeout': 5,
        'thinkTime': 0,
        'iterationTimeout': 60,
        'tickInterval': 1,
        'abortCheckInterval': 5,
        'output_dir': 'reports',
        'json': False,
        'batch_mode': {
            'cooldown': 5
        }
    }


def build_options(config: Dict, functions: Mapping[str, Callable]) -> LoadTestOptions:
    """
    验证配置，并把每个场景绑定到它的迭代函数

    Args:
        config: 合并后的配置
        functions: 按名称索引的脚本函数；存在 "setup" 和 "teardown" 时一并使用

    Returns:
        LoadTestOptions

    Raises:
        ConfigurationError: 配置无效，或 exec 名称找不到对应函数
    """
    validate_config(config)

    default_think = config.get('thinkTime')
    default_timeout = config.get('iterationTimeout')

    raw_scenarios = config.get('scenarios')
    if not raw_scenarios:
        shortcut = {key: config[key] for key in SHORTCUT_KEYS if key in config}
        if config.get('stages'):
            shortcut['executor'] = EXECUTOR_RAMPING_VUS
            shortcut.pop('vus', None)
        else:
            shortcut['executor'] = EXECUTOR_CONSTANT_VUS
            shortcut.pop('startVUs', None)
        raw_scenarios = {'default': shortcut}

    scenarios = []
    for name, raw in raw_scenarios.items():
        exec_name = raw.get('exec', 'default')
        fn = functions.get(exec_name)
        if not (callable(fn) or isinstance(fn, Scenario)):
            raise ConfigurationError(f"scenario '{name}': exec function '{exec_name}' not found")

        executor = raw.get('executor', EXECUTOR_CONSTANT_VUS)
        timeout = raw.get('iterationTimeout', default_timeout)
        scenarios.append(ScenarioConfig(
            name=name,
            fn=fn,
            exec_name=exec_name,
            executor=executor,
            vus=raw.get('vus', 1),
            duration=parse_duration(raw.get('duration')),
            start_vus=raw.get('startVUs', 0),
            stages=parse_stages(raw.get('stages')),
            tags=dict(raw.get('tags') or {}),
            start_time=parse_duration(raw.get('startTime')),
            think_time=ThinkTime.from_value(raw.get('thinkTime', default_think)),
            iteration_timeout=parse_duration(timeout) if timeout is not None else None,
        ))

    setup = functions.get('setup')
    teardown = functions.get('teardown')
    cap = config.get('trendSampleCap')

    return LoadTestOptions(
        scenarios=tuple(scenarios),
        thresholds=dict(config.get('thresholds') or {}),
        setup=setup if callable(setup) else None,
        teardown=teardown if callable(teardown) else None,
        metrics=dict(config.get('metrics') or {}),
        checks=tuple(config.get('checks') or ()),
        url=config.get('url'),
        timeout=parse_duration(config.get('timeout', 5)),
        tick_interval=parse_duration(config.get('tickInterval', 1)),
        abort_check_interval=parse_duration(config.get('abortCheckInterval', 5)),
        trend_sample_cap=cap,
    )
