"""
状态归一化 - 将多来源、可能冲突的支付信号归并为唯一的订单状态

纯函数，无 IO。优先级顺序不可调整：
1. 渠道显式取消/无效           -> cancelled
2. 无网关交易但存在旧版订单存根 -> pending
3. 网关交易处于待定状态         -> pending
4. 网关交易成功且金额/币种核对通过 -> completed，否则 failed
5. 网关交易失败                 -> failed
6. 其它（未知或缺失）           -> cancelled
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.payment.entity import OrderStatus, GatewayTransaction
from shared.codes.payment_codes import (
    REDIRECT_STATUS_TO_INTERNAL,
    GATEWAY_PENDING_STATUSES,
    GATEWAY_SUCCESS_STATUSES,
    GATEWAY_FAILED_STATUSES,
)


def map_channel_status(raw_status: Optional[str]) -> Optional[OrderStatus]:
    """将回跳渠道的原始状态映射为规范状态，未知时返回 None"""
    mapped = REDIRECT_STATUS_TO_INTERNAL.get((raw_status or "").strip().lower())
    return OrderStatus(mapped) if mapped else None


def is_valid_currency(verified: Optional[str], captured: Optional[str]) -> bool:
    return (verified or "").strip().upper() == (captured or "").strip().upper()


def is_valid_amount(verified: Optional[Decimal], captured: Optional[Decimal]) -> bool:
    if verified is None or captured is None:
        return False
    return verified >= captured


def resolve_order_status(
    *,
    channel_status: Optional[OrderStatus],
    transaction: Optional[GatewayTransaction],
    legacy_stub_exists: bool,
    captured_amount: Optional[Decimal],
    captured_currency: Optional[str],
) -> OrderStatus:
    if channel_status is OrderStatus.CANCELLED:
        return OrderStatus.CANCELLED

    if transaction is None:
        return OrderStatus.PENDING if legacy_stub_exists else OrderStatus.CANCELLED

    tx_status = (transaction.status or "").strip().lower()

    if tx_status in GATEWAY_PENDING_STATUSES:
        return OrderStatus.PENDING

    if tx_status in GATEWAY_SUCCESS_STATUSES:
        # 金额不足或币种不符的“成功”交易一律降级为失败
        if is_valid_amount(transaction.amount, captured_amount) and is_valid_currency(
            transaction.currency, captured_currency
        ):
            return OrderStatus.COMPLETED
        return OrderStatus.FAILED

    if tx_status in GATEWAY_FAILED_STATUSES:
        return OrderStatus.FAILED

    return OrderStatus.CANCELLED
