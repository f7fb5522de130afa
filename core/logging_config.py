"""
Structlog 日志配置模块

DEBUG 下输出彩色控制台日志，其它环境输出单行 JSON；标准库 logging（uvicorn、
sqlalchemy、celery）经 ProcessorFormatter 走同一条处理链。
"""
import json
import logging
from typing import Any, List

import structlog
from structlog.contextvars import merge_contextvars
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer, TimeStamper, add_log_level
from structlog.stdlib import ProcessorFormatter

from core.config import settings


# 商户凭证与签名相关字段，任何层级出现都会被替换
SENSITIVE_KEYS = frozenset({
    "token", "secret", "api_key", "access_token", "authorization",
    "sk", "pk", "test_sk", "test_pk", "seckey", "hmac",
    "x-f4b-hmac", "x-shopify-app-hmac", "x-shopify-access-token", "x-backfill-token",
    "encrypted_session", "encrypted_keys",
})
REDACTED = "***"


def redact(data: Any) -> Any:
    """递归脱敏 dict/list 中的敏感键"""
    if isinstance(data, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else redact(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(redact(v) for v in data)
    return data


def redact_event(_logger: Any, _method: str, event_dict: dict) -> dict:
    """structlog 处理器：对事件字段做同样的脱敏"""
    return redact(event_dict)


def get_renderer() -> Any:
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)

    # structlog 会传入 default/sort_keys 等参数
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)

    return JSONRenderer(serializer=_dumps)


def configure_logging() -> None:
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_event,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*shared_pre_chain, ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[ProcessorFormatter.remove_processors_meta, get_renderer()],
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    # SQL 语句日志由 DATABASE__ECHO 控制，避免 DEBUG 下刷屏
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database.echo else logging.WARNING
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
