#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
电商性能测试脚本
针对商城的冒烟、负载、压力和尖峰场景，含自定义指标和阈值
"""

import asyncio
import random
import time

from vu_load_tools.core.load_test_reporter import print_summary
from vu_load_tools.core.load_test_runner import run_script

BASE_URL = 'http://localhost:9090'

options = {
    'url': BASE_URL,
    'scenarios': {
        # 轻负载，验证基本功能
        'smoke_test': {
            'executor': 'constant-vus',
            'vus': 1,
            'duration': '30s',
            'tags': {'test_type': 'smoke'},
            'exec': 'smoke_test',
        },
        # 正常预期负载
        'load_test': {
            'executor': 'ramping-vus',
            'startVUs': 0,
            'stages': [
                {'duration': '2m', 'target': 10},
                {'duration': '5m', 'target': 10},
                {'duration': '2m', 'target': 20},
                {'duration': '5m', 'target': 20},
                {'duration': '2m', 'target': 0},
            ],
            'tags': {'test_type': 'load'},
            'exec': 'load_test',
        },
        # 寻找崩溃点
        'stress_test': {
            'executor': 'ramping-vus',
            'startVUs': 0,
            'stages': [
                {'duration': '2m', 'target': 20},
                {'duration': '5m', 'target': 20},
                {'duration': '2m', 'target': 40},
                {'duration': '5m', 'target': 40},
                {'duration': '2m', 'target': 60},
                {'duration': '5m', 'target': 60},
                {'duration': '2m', 'target': 0},
            ],
            'tags': {'test_type': 'stress'},
            'exec': 'stress_test',
        },
        # 负载突增
        'spike_test': {
            'executor': 'ramping-vus',
            'startVUs': 0,
            'stages': [
                {'duration': '10s', 'target': 5},
                {'duration': '30s', 'target': 50},
                {'duration': '1m', 'target': 5},
            ],
            'tags': {'test_type': 'spike'},
            'exec': 'spike_test',
        },
    },
    'metrics': {
        'error_rate': 'rate',
        'page_load_time': {'kind': 'trend', 'time': True},
        'api_response_time': {'kind': 'trend', 'time': True},
        'checkout_errors': 'counter',
    },
    'thresholds': {
        'http_req_duration': ['p(95)<2000'],
        'http_req_failed': ['rate<0.05'],
        'error_rate': ['rate<0.1'],
        'page_load_time': ['p(95)<3000'],
        'api_response_time': ['p(95)<1000'],
    },
}

TEST_PRODUCTS = [
    'men-jacket',
    'women-dress',
    'kids-shoes',
    'accessories',
]


def _elapsed_ms(start_time: float) -> float:
    return (time.monotonic() - start_time) * 1000.0


async def smoke_test(context):
    start_time = time.monotonic()

    response = await context.http.get('/')
    context.check_all(response, {
        'Homepage loads successfully': lambda r: r.status == 200,
        'Homepage contains title': lambda r: 'EverShop' in r.text or 'Welcome' in r.text,
    })

    context.add('page_load_time', _elapsed_ms(start_time))
    context.add('error_rate', response.status != 200)

    await context.sleep(1)


async def load_test(context):
    start_time = time.monotonic()

    response = await context.http.get('/')
    context.check('Homepage status is 200', lambda r: r.status == 200, response)
    await context.think(1, 3)

    response = await context.http.get('/products')
    context.check('Products page loads', lambda r: r.status == 200, response)
    await context.think(1, 3)

    search_term = random.choice(['jacket', 'dress', 'shoes', 'accessories'])
    response = await context.http.get(f'/search?q={search_term}')
    context.check('Search works', lambda r: r.status == 200, response)
    await context.think(1, 3)

    response = await context.http.get(f'/product/{random.choice(TEST_PRODUCTS)}')
    context.check('Product detail loads', lambda r: r.status == 200, response)

    context.add('page_load_time', _elapsed_ms(start_time))
    context.add('error_rate', response.status != 200)

    await context.sleep(1)


async def stress_test(context):
    start_time = time.monotonic()
    journey = [
        '/',
        '/products',
        '/categories',
        '/search?q=test',
        f'/product/{random.choice(TEST_PRODUCTS)}',
    ]

    for _ in range(3):
        response = await context.http.get(random.choice(journey))
        context.check('Request successful', lambda r: r.status == 200, response)
        context.add('error_rate', response.status != 200)
        await context.sleep(0.5)

    context.add('page_load_time', _elapsed_ms(start_time))


async def spike_test(context):
    start_time = time.monotonic()

    responses = await context.http.batch(['/', '/products', '/api/products', '/categories'])
    for index, response in enumerate(responses, 1):
        context.check(f'Batch request {index} successful', lambda r: r.status == 200, response)
        context.add('error_rate', response.status != 200)

    context.add('page_load_time', _elapsed_ms(start_time))


async def ecommerce_user_journey(context):
    start_time = time.monotonic()

    response = await context.http.get('/')
    context.check('Homepage loads', lambda r: r.status == 200, response)
    await context.sleep(2)

    response = await context.http.get('/categories')
    context.check('Categories page loads', lambda r: r.status == 200, response)
    await context.sleep(1)

    response = await context.http.get('/products')
    context.check('Products page loads', lambda r: r.status == 200, response)
    await context.sleep(2)

    response = await context.http.get(f'/product/{random.choice(TEST_PRODUCTS)}')
    context.check('Product detail loads', lambda r: r.status == 200, response)
    await context.sleep(3)

    api_start = time.monotonic()
    response = await context.http.post('/api/cart/add', json={'productId': '1', 'quantity': '1'})
    context.add('api_response_time', _elapsed_ms(api_start))
    context.check('Add to cart API', lambda r: r.status in (200, 201), response)
    await context.sleep(1)

    response = await context.http.get('/cart')
    context.check('Cart page loads', lambda r: r.status == 200, response)
    await context.sleep(2)

    response = await context.http.get('/checkout')
    context.check('Checkout page loads', lambda r: r.status == 200, response)
    if response.status != 200:
        context.add('checkout_errors', 1)

    context.add('page_load_time', _elapsed_ms(start_time))
    await context.sleep(1)


async def api_performance_test(context):
    api_tests = [
        ('Products API', '/api/products'),
        ('Categories API', '/api/categories'),
        ('Search API', '/api/search?q=test'),
    ]

    for name, url in api_tests:
        response = await context.http.get(url)
        context.check_all(response, {
            f'{name} responds successfully': lambda r: r.status == 200,
            f'{name} response time OK': lambda r: r.duration < 1000,
        })
        context.add('api_response_time', response.duration)
        context.add('error_rate', response.status != 200)

    await context.sleep(0.5)


async def setup(context):
    print("Starting e-commerce performance tests...")
    print(f"Target URL: {BASE_URL}")

    warmup = await context.http.get('/')
    if warmup.status != 200:
        print("Warmup request failed. Server might not be ready.")

    return {'timestamp': time.time()}


async def teardown(context):
    print("Performance tests completed")
    print(f"Test duration: {time.time() - context.setup_data['timestamp']:.1f}s")


async def default(context):
    await load_test(context)


async def main():
    """主函数"""
    print(f"\n{'=' * 80}")
    print("E-commerce performance test")
    print(f"{'=' * 80}")
    print(f"Scenarios: {', '.join(options['scenarios'])}")
    print()

    try:
        result = await run_script(__file__, output_dir='reports/ecommerce', save_json=True)
        print_summary(result)
    except KeyboardInterrupt:
        print("\n\nTest interrupted by user")


if __name__ == '__main__':
    asyncio.run(main())
