#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
压测核心模块
可复用的虚拟用户负载生成引擎
"""

from .load_test_core import RunCoordinator, RunResult, RunState, Verdict, run_load_test
from .load_test_runner import run_single_test, run_batch_tests, run_sequential_tests, run_script
from .load_test_config import build_options, load_config, merge_config, parse_duration, validate_config
from .load_test_errors import ConfigurationError, IterationError, LoadTestError
from .load_test_executor import Scenario, UserContext
from .load_test_metrics import MetricKind, MetricRegistry
from .load_test_scheduler import Stage

__all__ = [
    'RunCoordinator',
    'RunResult',
    'RunState',
    'Verdict',
    'run_load_test',
    'run_single_test',
    'run_batch_tests',
    'run_sequential_tests',
    'run_script',
    'build_options',
    'load_config',
    'merge_config',
    'parse_duration',
    'validate_config',
    'ConfigurationError',
    'IterationError',
    'LoadTestError',
    'Scenario',
    'UserContext',
    'MetricKind',
    'MetricRegistry',
    'Stage',
]
