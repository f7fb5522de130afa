"""
上游 HTTP 客户端基类：共享连接、超时、传输层重试与结构化日志

网关 REST 客户端与商店 GraphQL 驱动继承它，只负责各自的请求/响应映射。
HTTP 状态码的含义由子类判断，这里只重试传输层失败。
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger


logger = get_logger(__name__)

DEFAULT_TIMEOUTS = {"connect": 2.0, "read": 10.0, "write": 10.0, "total": 15.0}
DEFAULT_RETRY = {"max": 2, "base": 0.2}
SNAPSHOT_TEXT_LIMIT = 2048


class BaseHTTPClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cfg = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._timeout = httpx.Timeout(
            cfg["total"], connect=cfg["connect"], read=cfg["read"], write=cfg["write"]
        )
        self._max_retries = int((retry or DEFAULT_RETRY).get("max", DEFAULT_RETRY["max"]))
        self._backoff = float((retry or DEFAULT_RETRY).get("base", DEFAULT_RETRY["base"]))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        # 首次调用时创建，之后复用连接池直到 aclose()
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        http = self._http()
        started = time.perf_counter()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._backoff, min=0.1, max=2.0),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                resp = await http.request(method, url, **kwargs)
        logger.debug(
            "upstream_http_call",
            provider=self.provider,
            method=method,
            url=f"{resp.request.url.host}{resp.request.url.path}",
            status_code=resp.status_code,
            attempts=attempt.retry_state.attempt_number,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return resp

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, provider=self.provider, **kwargs)

    def _log_error(self, event: str, **kwargs) -> None:
        logger.error(event, provider=self.provider, **kwargs)


def response_snapshot(response: Optional[httpx.Response]) -> Any:
    """尽量取 JSON 响应体用于诊断，否则截断文本"""
    if response is None:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text[:SNAPSHOT_TEXT_LIMIT]
