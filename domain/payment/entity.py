"""
支付对账领域实体 - 订单、退款、商户配置与网关交易视图
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"        # 待确认（可再次流转）
    COMPLETED = "completed"    # 支付成功
    FAILED = "failed"          # 支付失败
    CANCELLED = "cancelled"    # 已取消

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    INVALID = "invalid"        # 元数据损坏，不再重试

    @property
    def is_terminal(self) -> bool:
        return self is not RefundStatus.PENDING


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_decimal(value: Any) -> Optional[Decimal]:
    """宽松解析金额，无法解析时返回 None"""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass
class Order:
    """
    订单 - 对账的基本单元

    业务规则：
    1. (merchant, order_id) 唯一
    2. raw 为创建时的不可变快照（金额、币种、取消地址等）
    3. 状态进入 completed/failed/cancelled 后不再被覆盖
    """

    merchant: str
    order_id: str
    gid: str
    raw: dict
    is_test: bool = False
    hosted_link: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    remote_tx_id: Optional[str] = None
    account_id: Optional[str] = None
    forward_pending: bool = False
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.order_id:
            raise DomainValidationException("order id is required", field="id")
        if self.raw is None:
            self.raw = {}
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def amount(self) -> Optional[Decimal]:
        return to_decimal(self.raw.get("amount"))

    @property
    def currency(self) -> str:
        return str(self.raw.get("currency") or "")

    @property
    def cancel_url(self) -> Optional[str]:
        return self.raw.get("cancel_url")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def apply_status(
        self,
        status: OrderStatus,
        *,
        remote_tx_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> bool:
        """应用状态；终态订单不做任何修改并返回 False"""
        if self.is_terminal:
            return False
        self.status = status
        self.remote_tx_id = remote_tx_id
        self.account_id = account_id
        self.updated_at = datetime.now(timezone.utc)
        return True


@dataclass(frozen=True)
class RefundAttempt:
    """单次退款提交的快照，仅追加"""
    at: int  # epoch ms
    successful: bool
    status_code: Optional[int] = None

    def to_dict(self) -> dict:
        return {"at": self.at, "successful": self.successful, "statusCode": self.status_code}

    @classmethod
    def from_dict(cls, data: dict) -> "RefundAttempt":
        return cls(
            at=int(data.get("at") or 0),
            successful=bool(data.get("successful")),
            status_code=data.get("statusCode"),
        )


class RefundMetaCorrupted(ValueError):
    """退款元数据无法解析"""


_META_KEYS = {
    "refund_api_req_successful": "refundApiReqSuccessful",
    "retry_count": "retryCount",
    "max_retries": "maxRetries",
    "last_api_response_status": "lastApiResponseStatus",
    "last_api_response_obj": "lastApiResponseObj",
}


@dataclass(frozen=True)
class RefundMeta:
    """
    退款重试元数据

    合并时只覆盖显式给出的字段，attempts 只追加，retry_count 单调不减且不超过 max_retries。
    """

    refund_api_req_successful: Optional[bool] = None
    retry_count: int = 0
    max_retries: int = 7
    last_api_response_status: Optional[int] = None
    last_api_response_obj: Any = None
    attempts: tuple[RefundAttempt, ...] = ()

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def merge(self, *, attempt: Optional[RefundAttempt] = None, **changes: Any) -> "RefundMeta":
        unknown = set(changes) - set(_META_KEYS)
        if unknown:
            raise DomainValidationException(
                f"unknown refund metadata fields: {sorted(unknown)}",
                field="metadata",
            )
        if "retry_count" in changes:
            changes["retry_count"] = max(self.retry_count, int(changes["retry_count"]))
        merged = replace(self, **changes)
        if merged.retry_count > merged.max_retries:
            raise DomainValidationException(
                f"retry count {merged.retry_count} exceeds cap {merged.max_retries}",
                field="retry_count",
            )
        if attempt is not None:
            merged = replace(merged, attempts=merged.attempts + (attempt,))
        return merged

    def to_dict(self) -> dict:
        data = {camel: getattr(self, snake) for snake, camel in _META_KEYS.items()}
        data["attempts"] = [a.to_dict() for a in self.attempts]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "RefundMeta":
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
        except (TypeError, ValueError) as exc:
            raise RefundMetaCorrupted(str(exc)) from exc
        if not isinstance(data, dict):
            raise RefundMetaCorrupted(f"unexpected metadata payload: {type(data).__name__}")
        kwargs = {snake: data[camel] for snake, camel in _META_KEYS.items() if camel in data}
        try:
            attempts = tuple(RefundAttempt.from_dict(a) for a in data.get("attempts") or [])
            kwargs["retry_count"] = int(kwargs.get("retry_count") or 0)
            if "max_retries" in kwargs:
                kwargs["max_retries"] = int(kwargs["max_retries"])
        except (TypeError, ValueError, AttributeError) as exc:
            raise RefundMetaCorrupted(str(exc)) from exc
        return cls(attempts=attempts, **kwargs)


@dataclass
class Refund:
    """
    退款实体

    业务规则：
    1. refund_id 全局唯一，重复提交视为已受理
    2. pending -> resolved | rejected，均为终态；元数据损坏时标记 invalid
    3. meta 为 None 表示库中元数据不可解析
    """

    refund_id: str
    gid: str
    order_id: str
    merchant: str
    amount: Decimal
    currency: str
    is_test: bool = False
    status: RefundStatus = RefundStatus.PENDING
    remote_tx_id: Optional[str] = None
    account_id: Optional[str] = None
    meta: Optional[RefundMeta] = field(default_factory=RefundMeta)
    retry_at: Optional[int] = None  # epoch ms
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.refund_id:
            raise DomainValidationException("refund id is required", field="id")
        if self.amount is None or self.amount <= 0:
            raise DomainValidationException(
                f"退款金额必须大于0: {self.amount}",
                field="amount"
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _ensure_pending(self, target: RefundStatus) -> None:
        if self.is_terminal:
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 {target.value}",
                field="status"
            )

    def mark_resolved(self) -> None:
        self._ensure_pending(RefundStatus.RESOLVED)
        self.status = RefundStatus.RESOLVED
        self.retry_at = None
        self.updated_at = datetime.now(timezone.utc)

    def mark_rejected(self) -> None:
        self._ensure_pending(RefundStatus.REJECTED)
        self.status = RefundStatus.REJECTED
        self.retry_at = None
        self.updated_at = datetime.now(timezone.utc)

    def mark_invalid(self) -> None:
        self._ensure_pending(RefundStatus.INVALID)
        self.status = RefundStatus.INVALID
        self.retry_at = None
        self.updated_at = datetime.now(timezone.utc)

    def schedule_retry(self, at_ms: int) -> None:
        self._ensure_pending(RefundStatus.PENDING)
        self.retry_at = at_ms
        self.updated_at = datetime.now(timezone.utc)


@dataclass
class GatewayKeys:
    """商户网关密钥包（明文仅存在于内存中）"""
    sk: Optional[str] = None
    pk: Optional[str] = None
    test_sk: Optional[str] = None
    test_pk: Optional[str] = None

    def secret_for(self, is_test: bool) -> Optional[str]:
        return self.test_sk if is_test else self.sk

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GatewayKeys":
        data = data or {}
        return cls(
            sk=data.get("sk"),
            pk=data.get("pk"),
            test_sk=data.get("test_sk"),
            test_pk=data.get("test_pk"),
        )


@dataclass
class MerchantConfig:
    """商户配置：凭证只以密文保存"""
    domain: str
    encrypted_session: Optional[str] = None
    encrypted_keys: Optional[str] = None
    account_id: Optional[str] = None
    installed: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class GatewayTransaction:
    """网关侧交易视图（核验接口返回或镜像表记录）"""
    id: Optional[str]
    status: Optional[str]
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    tx_ref: Optional[str] = None
    flw_ref: Optional[str] = None
    charge_message: Optional[str] = None
    account_id: Optional[str] = None
