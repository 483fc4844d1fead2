#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
入门脚本
10 个虚拟用户运行 30 秒，每次迭代一个 GET 请求并检查状态码
"""

import asyncio

from vu_load_tools.core.load_test_reporter import print_summary
from vu_load_tools.core.load_test_runner import run_script

options = {
    'vus': 10,
    'duration': '30s',
}


async def default(context):
    response = await context.http.get('https://httpbin.org/get')
    context.check('status is 200', lambda r: r.status == 200, response)
    await context.sleep(1)


async def main():
    """主函数"""
    result = await run_script(__file__, output_dir='reports/tutorial')
    print_summary(result)


if __name__ == '__main__':
    asyncio.run(main())
