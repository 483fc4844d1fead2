#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
命令行入口
运行压测脚本，并以结论作为退出码
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

from .core.load_test_core import RunCoordinator
from .core.load_test_errors import ConfigurationError
from .core.load_test_reporter import print_summary
from .core.load_test_runner import run_script

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        prog="vu-load",
        description="Run a virtual-user load test script and check its thresholds."
    )
    parser.add_argument("script", help="Path to the load test script (.py)")
    parser.add_argument("--config", help="JSON or YAML config file layered over the script options")
    parser.add_argument("--vus", type=int, help="Run a constant number of virtual users")
    parser.add_argument("--duration", help="Run duration, e.g. 30s or 1m30s")
    parser.add_argument("--url", help="Base URL for relative requests")
    parser.add_argument("--output-dir", help="Report directory")
    parser.add_argument("--json", action="store_true", default=None, help="Also save a JSON report")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> Dict:
    """命令行上实际给出的配置项"""
    overrides = {}
    if args.vus is not None:
        overrides['vus'] = args.vus
    if args.duration is not None:
        overrides['duration'] = args.duration
    if args.url is not None:
        overrides['url'] = args.url
    return overrides


def _install_signal_handler(coordinator: RunCoordinator) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, coordinator.cancel)
    except NotImplementedError:
        # Windows 上没有事件循环信号处理，Ctrl+C 会直接取消主任务
        pass


def main(argv: Optional[List[str]] = None) -> int:
    """
    主入口：加载脚本、运行并打印结果

    Returns:
        结论为 Pass 时返回 EXIT_PASS (0)，Fail 时返回 EXIT_THRESHOLD_BREACH (1)，
        配置或脚本错误时返回 EXIT_SCRIPT_ERROR (2)
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        result = asyncio.run(run_script(
            args.script,
            config_path=args.config,
            cli_config=cli_overrides(args),
            output_dir=args.output_dir,
            save_json=args.json,
            on_ready=_install_signal_handler,
        ))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    print_summary(result)
    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


if __name__ == "__main__":
    raise SystemExit(main())
