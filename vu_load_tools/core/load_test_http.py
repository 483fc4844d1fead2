#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
HTTP 能力
基于 aiohttp 的传输层，以及场景使用的客户端；记录内置 http_* 指标
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import aiohttp

from .load_test_metrics import HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS, MetricRegistry

# (method, url, **kwargs) -> HttpResponse；网络错误时抛出异常
Transport = Callable[..., Awaitable['HttpResponse']]


@dataclass(frozen=True)
class HttpResponse:
    """已完成的请求；duration 单位为毫秒"""
    status: int
    body: bytes = b''
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ''
    method: str = 'GET'
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        """把响应体解析为 JSON"""
        return json.loads(self.body)


def create_session(concurrency: int) -> aiohttp.ClientSession:
    """创建连接池大小与用户数匹配的会话"""
    connector = aiohttp.TCPConnector(limit=concurrency * 2, limit_per_host=concurrency * 2)
    return aiohttp.ClientSession(connector=connector)


class AiohttpTransport:
    """通过 aiohttp 会话发送单个请求"""

    def __init__(self, session: aiohttp.ClientSession, timeout: float = 5.0):
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __call__(self, method: str, url: str, **kwargs) -> HttpResponse:
        kwargs.setdefault('timeout', self._timeout)
        start_time = time.monotonic()
        async with self._session.request(method, url, **kwargs) as response:
            body = await response.read()
            return HttpResponse(
                status=response.status,
                body=body,
                headers=dict(response.headers),
                url=str(response.url),
                method=method,
                duration=(time.monotonic() - start_time) * 1000.0,
            )


class HttpClient:
    """
    作为 context.http 交给迭代函数的请求工具

    每个请求都计入 http_reqs 和 http_req_duration；状态码 >= 400 以及抛出
    异常的请求计入 http_req_failed。网络错误会重新抛出，使迭代失败。
    """

    def __init__(self, transport: Transport, registry: MetricRegistry, base_url: Optional[str] = None):
        self._transport = transport
        self._registry = registry
        self.base_url = base_url.rstrip('/') if base_url else None

    def _resolve(self, url: str) -> str:
        if self.base_url and not url.startswith(('http://', 'https://')):
            return f"{self.base_url}/{url.lstrip('/')}"
        return url

    async def request(self, method: str, url: str, **kwargs) -> HttpResponse:
        """
        发送请求并记录指标

        Args:
            method: HTTP 方法
            url: 绝对地址，或相对 base_url 的路径
            **kwargs: 透传给传输层

        Returns:
            HttpResponse
        """
        try:
            response = await self._transport(method.upper(), self._resolve(url), **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._registry.observe(HTTP_REQS, 1)
            self._registry.observe(HTTP_REQ_FAILED, True)
            raise

        self._registry.observe(HTTP_REQS, 1)
        self._registry.observe(HTTP_REQ_DURATION, response.duration)
        self._registry.observe(HTTP_REQ_FAILED, response.status >= 400)
        return response

    async def get(self, url: str, **kwargs) -> HttpResponse:
        return await self.request('GET', url, **kwargs)

    async def post(self, url: str, **kwargs) -> HttpResponse:
        return await self.request('POST', url, **kwargs)

    async def put(self, url: str, **kwargs) -> HttpResponse:
        return await self.request('PUT', url, **kwargs)

    async def patch(self, url: str, **kwargs) -> HttpResponse:
        return await self.request('PATCH', url, **kwargs)

    async def delete(self, url: str, **kwargs) -> HttpResponse:
        return await self.request('DELETE', url, **kwargs)

    async def batch(self, requests: Iterable) -> List[HttpResponse]:
        """
        并发发送多个请求

        任一请求抛出异常时，先取消并等待其余请求，再向外抛出。

        Args:
            requests: URL（GET）、(method, url) 或 (method, url, kwargs)

        Returns:
            与请求顺序一致的响应列表
        """
        planned = []
        for item in requests:
            if isinstance(item, str):
                planned.append(('GET', item, {}))
                continue
            method, url, *rest = item
            options: Dict = rest[0] if rest else {}
            planned.append((method, url, options))

        tasks = [asyncio.ensure_future(self.request(method, url, **options)) for method, url, options in planned]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
