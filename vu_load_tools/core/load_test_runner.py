#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
测试运行器
提供高级测试流程控制：单次运行、批量运行以及运行用户脚本文件
"""

import asyncio
import importlib.util
import logging
import os
from datetime import datetime
from types import ModuleType
from typing import Callable, Dict, List, Optional, Tuple

from .load_test_config import build_options, get_default_config, load_config, merge_config
from .load_test_core import RunCoordinator, RunResult
from .load_test_errors import ConfigurationError
from .load_test_executor import Scenario
from .load_test_reporter import generate_summary_report, save_reports

logger = logging.getLogger(__name__)


async def run_single_test(
    config: Dict,
    functions: Dict[str, Callable],
    output_dir: str = 'reports',
    save_json: bool = False,
    test_name: str = "single_test",
    transport=None
) -> RunResult:
    """
    运行单次测试

    Args:
        config: 运行配置（见 load_test_config）
        functions: 配置引用的脚本函数
        output_dir: 报告输出目录
        save_json: 是否保存JSON报告
        test_name: 测试名称，用于报告文件名
        transport: 替换请求函数，主要用于测试

    Returns:
        RunResult: 测试结果
    """
    options = build_options(config, functions)
    result = await RunCoordinator(options, transport=transport).run()

    reports = save_reports(result, options.describe(), output_dir, save_json, test_name)
    print(f"✓ Report saved: {reports['text_report']}")

    return result


async def run_batch_tests(
    test_configs: List[Dict],
    base_config: Dict,
    functions: Dict[str, Callable],
    output_dir: str = 'reports',
    save_json: bool = False,
    cooldown: float = 5,
    transport=None
) -> List[Dict]:
    """
    批量运行测试

    Args:
        test_configs: 每次运行的覆盖配置；可选的 'name' 键为运行命名
        base_config: 所有运行共用的基础配置
        functions: 配置引用的脚本函数
        output_dir: 报告输出目录
        save_json: 是否保存JSON报告
        cooldown: 两次运行之间的冷却时间（秒）
        transport: 替换请求函数，主要用于测试

    Returns:
        每次运行一个字典，包含 'name'、'result'、'report_file'、'test_config'
    """
    batch_results = []
    total_tests = len(test_configs)

    for idx, test_config in enumerate(test_configs, 1):
        name = test_config.get('name', f"run_{idx}")
        print(f"\n{'=' * 80}")
        print(f"Test {idx}/{total_tests}: {name}")
        print(f"{'=' * 80}")

        config = merge_config({k: v for k, v in test_config.items() if k != 'name'}, {}, base_config)
        options = build_options(config, functions)
        result = await RunCoordinator(options, transport=transport).run()

        report_info = save_reports(result, options.describe(), output_dir, save_json, name)

        stats = result.metrics
        print(f"✓ Verdict: {result.verdict.value.upper()}")
        print(f"✓ Iterations: {stats['iterations'].count}")
        print(f"✓ Failed: {stats['iteration_failed'].rate * 100:.2f}%")

        batch_results.append({
            'name': name,
            'result': result,
            'report_file': report_info['text_report'],
            'test_config': config
        })

        if idx < total_tests:
            print(f"\nWaiting {cooldown} seconds before the next run...")
            await asyncio.sleep(cooldown)

    return batch_results


async def run_sequential_tests(
    test_configs: List[Dict],
    base_config: Dict,
    functions: Dict[str, Callable],
    output_dir: str = 'reports',
    save_json: bool = False,
    cooldown: float = 10,
    generate_summary: bool = True,
    transport=None
) -> List[Dict]:
    """
    按阶段顺序运行测试并生成汇总报告

    与 run_batch_tests 相同，另外写出对比各次运行的汇总文件。
    """
    batch_results = await run_batch_tests(
        test_configs=test_configs,
        base_config=base_config,
        functions=functions,
        output_dir=output_dir,
        save_json=save_json,
        cooldown=cooldown,
        transport=transport
    )

    if generate_summary and len(batch_results) > 1:
        summary_text = generate_summary_report(batch_results, base_config={
            key: value for key, value in base_config.items() if key in ('url', 'thresholds', 'thinkTime')
        })

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        os.makedirs(output_dir, exist_ok=True)
        summary_file = os.path.join(output_dir, f"load_test_summary_{timestamp}.txt")
        with open(summary_file, 'w', encoding='utf-8') as f:
            f.write(summary_text)

        print(f"✓ Summary report: {summary_file}")

    return batch_results


# ==================== 脚本文件 ====================

def load_script(script_path: str) -> Tuple[Dict, Dict[str, Callable]]:
    """
    导入用户脚本

    脚本定义 `options` 字典及其迭代函数（`default`、具名场景函数、
    可选的 `setup` / `teardown`）。

    Args:
        script_path: .py 文件路径

    Returns:
        (options, 按名称索引的函数)

    Raises:
        ConfigurationError: 文件不存在、导入失败或 options 无效
    """
    if not os.path.isfile(script_path):
        raise ConfigurationError(f"script not found: {script_path}")

    module_name = os.path.splitext(os.path.basename(script_path))[0]
    spec = importlib.util.spec_from_file_location(module_name, script_path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"cannot import script {script_path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise ConfigurationError(f"cannot import script {script_path}: {exc}") from exc

    options = getattr(module, 'options', {}) or {}
    if not isinstance(options, dict):
        raise ConfigurationError(f"'options' in {script_path} must be a dict")
    return options, script_functions(module)


def script_functions(module: ModuleType) -> Dict[str, Callable]:
    """脚本模块中定义的公开可调用对象和 Scenario 对象"""
    functions = {}
    for name, value in vars(module).items():
        if name.startswith('_') or isinstance(value, (type, ModuleType)):
            continue
        if isinstance(value, Scenario) or callable(value):
            functions[name] = value
    return functions


def prepare_script_run(
    script_path: str,
    config_path: Optional[str] = None,
    cli_config: Optional[Dict] = None,
    transport=None
) -> Tuple[RunCoordinator, Dict]:
    """
    为脚本创建已配置的运行协调器

    配置分层，后者覆盖前者：默认值、脚本 options、配置文件、命令行。

    Returns:
        (coordinator, 合并后的配置)
    """
    script_options, functions = load_script(script_path)
    file_config = load_config(config_path) if config_path else {}

    base = merge_config(script_options, {}, get_default_config())
    config = merge_config(file_config, cli_config or {}, base)

    options = build_options(config, functions)
    coordinator = RunCoordinator(options, transport=transport).configure()
    logger.info("loaded script %s with %d scenarios", script_path, len(options.scenarios))
    return coordinator, config


async def run_script(
    script_path: str,
    config_path: Optional[str] = None,
    cli_config: Optional[Dict] = None,
    output_dir: Optional[str] = None,
    save_json: Optional[bool] = None,
    transport=None,
    on_ready: Optional[Callable[[RunCoordinator], None]] = None
) -> RunResult:
    """
    加载脚本、运行并保存报告

    on_ready 在运行开始前以已配置的协调器调用，例如用于挂接信号处理。
    """
    coordinator, config = prepare_script_run(script_path, config_path, cli_config, transport)
    if on_ready is not None:
        on_ready(coordinator)
    result = await coordinator.run()

    test_name = os.path.splitext(os.path.basename(script_path))[0]
    reports = save_reports(
        result,
        coordinator.options.describe(),
        output_dir or config.get('output_dir', 'reports'),
        config.get('json', False) if save_json is None else save_json,
        test_name
    )
    print(f"✓ Report saved: {reports['text_report']}")
    return result
