"""
业务异常到 HTTP 的映射与全局异常处理器

所有错误响应统一走 error_response 包装；redirect_url 这类商店端直读的
成功响应不在此处处理。
"""
import traceback
import uuid
from typing import Mapping, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from .response import Response, error_response
from shared.codes import BusinessCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


logger = get_logger(__name__)


_HTTP_STATUS_BY_CODE = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_MISSING: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    BusinessCode.BUSINESS_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    # 回调/退款引用了不存在的订单属于调用方参数错误
    BusinessCode.ORDER_NOT_FOUND: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.MERCHANT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.ORDER_ALREADY_FINALIZED: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}

_CODE_BY_HTTP_STATUS = {
    http_status.HTTP_400_BAD_REQUEST: BusinessCode.PARAM_ERROR,
    http_status.HTTP_401_UNAUTHORIZED: BusinessCode.UNAUTHORIZED,
    http_status.HTTP_403_FORBIDDEN: BusinessCode.FORBIDDEN,
    http_status.HTTP_404_NOT_FOUND: BusinessCode.NOT_FOUND,
    http_status.HTTP_503_SERVICE_UNAVAILABLE: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    """业务码映射 HTTP 状态码，未登记的按 400 处理"""
    try:
        return _HTTP_STATUS_BY_CODE.get(BusinessCode(code), http_status.HTTP_400_BAD_REQUEST)
    except ValueError:
        return http_status.HTTP_400_BAD_REQUEST


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _render(status_code: int, body: Response, headers: Optional[Mapping[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def _validation_field(loc) -> str:
    # ("header", "shopify-shop-domain") -> "header.shopify-shop-domain"；body 前缀省略
    parts = [str(p) for p in loc]
    if parts and parts[0] == "body":
        parts = parts[1:]
    return ".".join(parts)


def register_exception_handlers(app: FastAPI):
    """注册全局异常处理器"""

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        status_code = business_code_to_http_status(exc.code)
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "business_exception",
            code=int(exc.code),
            error_type=exc.error_type,
            status_code=status_code,
            path=request.url.path,
            details=exc.details,
        )
        body = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=_request_id(request),
        )
        return _render(status_code, body)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # ctx 里可能放着异常对象，无法序列化
        errors = jsonable_encoder([{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()])
        first = errors[0] if errors else {}
        body = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": errors},
            field=_validation_field(first.get("loc", [])),
            request_id=_request_id(request),
        )
        return _render(http_status.HTTP_422_UNPROCESSABLE_ENTITY, body)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        body = error_response(
            code=_CODE_BY_HTTP_STATUS.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return _render(exc.status_code, body, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """未捕获异常统一 500；调试模式附带堆栈"""
        request_id = _request_id(request)
        logger.error("unhandled_exception", request_id=request_id, path=request.url.path,
                     error=str(exc), exc_info=True)
        details = {"exception": str(exc), "traceback": traceback.format_exc()} if app.debug else None
        body = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return _render(http_status.HTTP_500_INTERNAL_SERVER_ERROR, body)
