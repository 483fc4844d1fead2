#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
报告生成器
单次运行的文本和 JSON 报告，以及批量运行的汇总
"""

import json
import os
from datetime import datetime
from typing import Dict, List, Optional

from .load_test_core import RunResult
from .load_test_metrics import (
    CHECKS,
    HTTP_REQ_DURATION,
    ITERATION_FAILED,
    ITERATIONS,
    CounterSnapshot,
    GaugeSnapshot,
    RateSnapshot,
    TrendSnapshot,
)


def _fmt(value, contains_time: bool = False) -> str:
    if value is None:
        return 'n/a'
    if contains_time:
        return f"{value:.2f}ms"
    return f"{value:.3f}" if isinstance(value, float) else str(value)


def _metric_line(metric) -> str:
    if isinstance(metric, TrendSnapshot):
        t = metric.contains_time
        return (f"avg={_fmt(metric.avg, t)} min={_fmt(metric.min, t)} med={_fmt(metric.med, t)} "
                f"max={_fmt(metric.max, t)} p(90)={_fmt(metric.percentile(90), t)} "
                f"p(95)={_fmt(metric.percentile(95), t)} count={metric.count}")
    if isinstance(metric, RateSnapshot):
        return f"{metric.rate * 100:.2f}% ({metric.passes} / {metric.total})"
    if isinstance(metric, CounterSnapshot):
        return f"{metric.count} ({metric.rate:.2f}/s)"
    if isinstance(metric, GaugeSnapshot):
        return f"value={_fmt(metric.value)} min={_fmt(metric.minimum)} max={_fmt(metric.maximum)}"
    return str(metric)


def generate_report_text(result: RunResult, test_config: Optional[Dict] = None) -> str:
    """
    生成文本报告

    Args:
        result: 运行结果
        test_config: 报告中展示的配置

    Returns:
        报告文本
    """
    lines = []

    lines.append("=" * 80)
    lines.append("Load test report")
    lines.append("=" * 80)
    lines.append(f"Test time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"Verdict: {result.verdict.value.upper()}")
    state = result.state.value
    if result.abort_reason is not None:
        state += f" ({result.abort_reason.value}: {result.abort_detail})"
    lines.append(f"State: {state}")
    lines.append(f"Duration: {result.duration:.2f} s")

    if test_config:
        lines.append("\n[Test config]")
        for key, value in test_config.items():
            lines.append(f"  {key}: {value}")

    if result.threshold_outcomes:
        lines.append("\n[Thresholds]")
        for outcome in result.threshold_outcomes:
            mark = "PASS" if outcome.passed else "FAIL"
            lines.append(f"  {mark}  {outcome.threshold.metric_name}: {outcome.threshold.source}"
                         f"  (observed {_fmt(outcome.observed_value)})")

    lines.append("\n[Metrics]")
    width = max((len(name) for name in result.metrics), default=0)
    for name in sorted(result.metrics):
        lines.append(f"  {name:<{width}}  {_metric_line(result.metrics[name])}")

    lines.append("=" * 80)

    return "\n".join(lines)


def _report_path(output_dir: str, test_name: str, extension: str) -> str:
    os.makedirs(output_dir, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    filename = f"load_test_report_{test_name}_{timestamp}.{extension}"
    return os.path.join(output_dir, filename)


def save_report(report_text: str, output_dir: str = "reports", test_name: str = "run") -> str:
    """保存文本报告，返回文件路径"""
    filepath = _report_path(output_dir, test_name, 'txt')
    with open(filepath, 'w', encoding='utf-8') as f:
        f.write(report_text)
    return filepath


def save_report_json(
    result: RunResult,
    test_config: Optional[Dict] = None,
    output_dir: str = "reports",
    test_name: str = "run"
) -> str:
    """保存 JSON 报告，返回文件路径"""
    filepath = _report_path(output_dir, test_name, 'json')
    report_data = {
        'test_time': datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
        'test_name': test_name,
        'test_config': test_config or {},
        'result': result.to_dict(),
    }
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(report_data, f, ensure_ascii=False, indent=2, default=str)
    return filepath


def save_reports(
    result: RunResult,
    test_config: Dict,
    output_dir: str,
    save_json: bool = False,
    test_name: str = "run"
) -> Dict[str, str]:
    """
    保存单次运行的全部报告

    Args:
        result: 运行结果
        test_config: 报告中展示的配置
        output_dir: 输出目录
        save_json: 是否同时保存 JSON 报告
        test_name: 用于文件名

    Returns:
        {
            'text_report': 'path/to/text_report.txt',
            'json_report': 'path/to/json_report.json'  # optional
        }
    """
    report_text = generate_report_text(result, test_config)
    reports = {'text_report': save_report(report_text, output_dir, test_name)}

    if save_json:
        reports['json_report'] = save_report_json(result, test_config, output_dir, test_name)

    return reports


def summary_row(result: RunResult) -> Dict:
    """运行的关键数字"""
    metrics = result.metrics
    iterations = metrics.get(ITERATIONS)
    failed = metrics.get(ITERATION_FAILED)
    checks = metrics.get(CHECKS)
    http_duration = metrics.get(HTTP_REQ_DURATION)
    return {
        'verdict': result.verdict.value,
        'iterations': iterations.count if iterations else 0,
        'iterations_per_second': iterations.rate if iterations else 0.0,
        'failed_rate': failed.rate if failed else 0.0,
        'checks_rate': checks.rate if checks else 0.0,
        'http_p95': http_duration.percentile(95) if http_duration else None,
    }


def generate_summary_report(batch_results: List[Dict], base_config: Optional[Dict] = None) -> str:
    """
    生成批量测试汇总报告

    Args:
        batch_results: 含 'name'、'result'、'report_file' 的字典列表
        base_config: 表头展示的公共配置

    Returns:
        汇总报告文本
    """
    lines = []

    lines.append("=" * 80)
    lines.append("Batch load test summary")
    lines.append("=" * 80)
    lines.append(f"Test time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    if base_config:
        lines.append("\n[Base config]")
        for key, value in base_config.items():
            lines.append(f"  {key}: {value}")

    lines.append("\n[Comparison]")
    header = (f"{'test':>16} | {'verdict':>7} | {'iterations':>10} | {'iter/s':>8} | "
              f"{'failed':>8} | {'checks':>8} | {'http p95':>12}")
    lines.append(header)
    lines.append("-" * len(header))

    for item in batch_results:
        row = summary_row(item['result'])
        p95 = f"{row['http_p95']:.2f}ms" if row['http_p95'] is not None else 'n/a'
        lines.append(
            f"{item['name']:>16} | {row['verdict']:>7} | {row['iterations']:>10} | "
            f"{row['iterations_per_second']:>8.2f} | {row['failed_rate'] * 100:>7.2f}% | "
            f"{row['checks_rate'] * 100:>7.2f}% | {p95:>12}"
        )

    failed = [item['name'] for item in batch_results if not item['result'].passed]
    lines.append("\n[Verdict]")
    if failed:
        lines.append(f"- failed: {', '.join(failed)}")
    else:
        lines.append("- all runs passed")

    lines.append("\n[Detailed reports]")
    for i, item in enumerate(batch_results, 1):
        report_file = item.get('report_file') or 'N/A'
        lines.append(f"  {i}. {item['name']}: {os.path.basename(report_file)}")

    lines.append("=" * 80)

    return "\n".join(lines)


def print_summary(result: RunResult) -> None:
    """在控制台打印简要结果"""
    row = summary_row(result)
    print(f"\n{'=' * 80}")
    print(f"Verdict: {row['verdict'].upper()}  ({result.state.value}, {result.duration:.2f}s)")
    print(f"{'=' * 80}")
    print(f"Iterations: {row['iterations']} ({row['iterations_per_second']:.2f}/s)")
    print(f"Failed iterations: {row['failed_rate'] * 100:.2f}%")
    print(f"Checks passed: {row['checks_rate'] * 100:.2f}%")
    if row['http_p95'] is not None:
        print(f"HTTP p95: {row['http_p95']:.2f}ms")
    for outcome in result.failed_thresholds:
        print(f"Threshold failed: {outcome.threshold} (observed {_fmt(outcome.observed_value)})")
    if result.abort_reason is not None:
        print(f"Aborted: {result.abort_reason.value} - {result.abort_detail}")
