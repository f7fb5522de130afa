"""
请求/响应日志中间件

商户密钥、会话令牌与签名会出现在设置与回调请求体/请求头中，记录前一律脱敏。
"""
import json
import time
from typing import Any, Optional
from urllib.parse import parse_qs

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.logging_config import get_logger, redact
from core.config import settings


logger = get_logger(__name__)

# 回跳与回调的关联字段，单独提出便于检索
TRACE_FIELDS = ("tx_ref", "transaction_id", "tx_id", "status", "shop")


class LoggingMiddleware(BaseHTTPMiddleware):
    SKIP_PATHS = {"/ping", "/health", "/docs", "/redoc", "/openapi.json"}

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES
        self.allow_multipart_body_log: bool = settings.LOG_REQUEST_BODY_ALLOW_MULTIPART

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        request_info = await self._request_info(request)
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - start_time,
                error=str(exc),
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        self._log_response(response, duration, request_info)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    async def _request_info(self, request: Request) -> dict:
        query = dict(request.query_params)
        info: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "query_params": redact(query),
        }
        if request.path_params:
            info["path_params"] = request.path_params

        body: Optional[Any] = None
        if request.method in ("POST", "PUT", "PATCH") and self._should_log_body(request):
            body = await self._read_body(request)
            if body is not None:
                info["body"] = redact(body)

        # 关联字段优先取 query，其次取 JSON 请求体
        for key in TRACE_FIELDS:
            value = query.get(key)
            if value is None and isinstance(body, dict):
                value = body.get(key)
            if value is not None:
                info.setdefault("trace", {})[key] = str(value)

        user_agent = request.headers.get("User-Agent")
        if user_agent:
            info["user_agent"] = user_agent
        return info

    def _should_log_body(self, request: Request) -> bool:
        # X-Log-Body: true/false 可覆盖环境默认值
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _read_body(self, request: Request) -> Optional[Any]:
        body = await request.body()
        if not body:
            return None
        text = body[: self.max_body_log_bytes].decode("utf-8", errors="ignore")
        content_type = request.headers.get("content-type", "").lower()
        if "application/json" in content_type:
            try:
                return json.loads(text)
            except ValueError:
                # 截断后的 JSON 不可解析，按文本记录
                return text
        if "application/x-www-form-urlencoded" in content_type:
            return {k: v if len(v) > 1 else v[0] for k, v in parse_qs(text).items()}
        if "multipart/form-data" in content_type:
            return {"multipart": True} if self.allow_multipart_body_log else None
        return text

    def _log_response(self, response: Response, duration: float, request_info: dict) -> None:
        status_code = response.status_code
        log_data = {"status_code": status_code, "duration": duration, **request_info}
        if status_code in (301, 302, 303, 307):
            # 回跳结果直接决定付款人去向
            log_data["location"] = response.headers.get("location")
        if status_code < 400:
            logger.info("request_completed", **log_data)
        elif status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            logger.error("request_server_error", **log_data)
