"""
跨层共享的业务码（Domain/Core/API 共用）

支付/退款相关的上游状态词表在 `shared.codes.payment_codes`。
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    # 参数类 1xxxx
    PARAM_ERROR = 10000
    PARAM_MISSING = 10001
    PARAM_VALIDATION_ERROR = 10003

    # 业务类 2xxxx：订单/商户相关占 201xx
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006
    ORDER_NOT_FOUND = 20101
    MERCHANT_NOT_FOUND = 20102
    ORDER_ALREADY_FINALIZED = 20103

    # 鉴权类 3xxxx（回调签名、补偿令牌）
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # 系统/上游 4xxxx
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode"]
