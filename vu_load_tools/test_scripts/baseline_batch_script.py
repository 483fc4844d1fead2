#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
阶段1：基线测试
低并发下依次运行，并在汇总报告中对比
"""

import asyncio

from vu_load_tools.core.load_test_runner import run_sequential_tests

# ==================== 测试配置 ====================
BASE_CONFIG = {
    'url': 'https://httpbin.org',
    'timeout': 5,
    'thinkTime': [1.0, 3.0],
    'thresholds': {
        'http_req_duration': ['p(95)<500'],
        'http_req_failed': ['rate<0.01'],
    },
}

# 每个并发级别运行一次
TEST_CONFIGS = [
    {'name': 'vus_1', 'vus': 1, 'duration': '1m'},
    {'name': 'vus_3', 'vus': 3, 'duration': '1m'},
    {'name': 'vus_5', 'vus': 5, 'duration': '1m'},
]

OUTPUT_DIR = 'reports/baseline'
SAVE_JSON = False
COOLDOWN = 5  # 两次运行之间的冷却时间（秒）

# =========================================================


async def default(context):
    response = await context.http.post('/anything', json={'content': 'baseline request'})
    context.check('status is 200', lambda r: r.status == 200, response)


async def main():
    """主函数"""
    print(f"\n{'=' * 80}")
    print("Baseline batch")
    print(f"{'=' * 80}")
    print(f"Runs: {len(TEST_CONFIGS)}")
    print(f"Output directory: {OUTPUT_DIR}")
    print()

    try:
        results = await run_sequential_tests(
            test_configs=TEST_CONFIGS,
            base_config=BASE_CONFIG,
            functions={'default': default},
            output_dir=OUTPUT_DIR,
            save_json=SAVE_JSON,
            cooldown=COOLDOWN,
            generate_summary=True
        )

        print(f"\n{'=' * 80}")
        print(f"Baseline batch finished: {sum(1 for item in results if item['result'].passed)}/{len(results)} passed")
        print(f"{'=' * 80}")

    except KeyboardInterrupt:
        print("\n\nTest interrupted by user")


if __name__ == '__main__':
    asyncio.run(main())
