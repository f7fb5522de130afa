"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class AuthenticationException(BusinessException):
    """签名/令牌校验失败，拒绝时不产生任何副作用"""

    def __init__(self, message: str = "Unauthorized", *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.UNAUTHORIZED,
            message=message,
            error_type="AuthenticationError",
            details=details,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str, *, merchant: Optional[str] = None, message: str = "order not found"):
        details = {"order_id": order_id}
        if merchant:
            details["merchant"] = merchant
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message=message,
            error_type="OrderNotFound",
            details=details,
        )


class MerchantNotFoundException(BusinessException):
    def __init__(self, domain: Optional[str] = None):
        super().__init__(
            code=BusinessCode.MERCHANT_NOT_FOUND,
            message="shop not found",
            error_type="MerchantNotFound",
            details={"merchant": domain} if domain else None,
        )


class AlreadyFinalizedException(BusinessException):
    """终态订单再次被尝试变更"""

    def __init__(self, order_id: str, status: str):
        super().__init__(
            code=BusinessCode.ORDER_ALREADY_FINALIZED,
            message=f"order already {status}",
            error_type="AlreadyFinalized",
            details={"order_id": order_id, "status": status},
        )


class UpstreamUnavailableException(BusinessException):
    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=message,
            error_type="UpstreamUnavailable",
            details=details,
        )


class GuardContention(Exception):
    """ProgressGuard 认领失败（已被其他进程/轮次占用），调用方应静默放弃"""

    def __init__(self, claim_token: str):
        self.claim_token = claim_token
        super().__init__(f"claim already taken: {claim_token}")


class OrderAlreadyExistsException(BusinessException):
    def __init__(self, merchant: str, order_id: str):
        super().__init__(
            code=BusinessCode.BUSINESS_ERROR,
            message=f"Order {order_id} already exists",
            error_type="OrderAlreadyExists",
            details={"merchant": merchant, "order_id": order_id},
        )
