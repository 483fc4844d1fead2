#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
分阶段负载脚本
爬坡到 100 个用户并保持，再爬坡到 200 并保持，最后降为 0
"""

import asyncio

from vu_load_tools.core.load_test_reporter import print_summary
from vu_load_tools.core.load_test_runner import run_script

options = {
    'stages': [
        {'duration': '2m', 'target': 100},
        {'duration': '5m', 'target': 100},
        {'duration': '2m', 'target': 200},
        {'duration': '5m', 'target': 200},
        {'duration': '2m', 'target': 0},
    ],
}


async def default(context):
    response = await context.http.get('https://httpbin.org/get')
    context.check_all(response, {
        'status is 200': lambda r: r.status == 200,
        'response time < 500ms': lambda r: r.duration < 500,
    })
    await context.sleep(1)


async def main():
    """主函数"""
    print(f"\n{'=' * 80}")
    print("Staged load test")
    print(f"{'=' * 80}")
    for stage in options['stages']:
        print(f"  {stage['duration']:>4} -> {stage['target']} users")
    print()

    try:
        result = await run_script(__file__, output_dir='reports/staged')
        print_summary(result)
    except KeyboardInterrupt:
        print("\n\nTest interrupted by user")


if __name__ == '__main__':
    asyncio.run(main())
