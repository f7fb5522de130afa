"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutCustomer(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: Optional[str] = None
    phone_number: Optional[str] = None
    billing_address: Optional[dict[str, Any]] = None


class CheckoutRequest(BaseModel):
    """Storefront checkout-init payload; the whole payload is kept as the order snapshot."""

    model_config = ConfigDict(extra="allow")

    id: str
    gid: str
    amount: Decimal = Field(gt=0)
    currency: str
    test: bool = False
    customer: CheckoutCustomer = Field(default_factory=CheckoutCustomer)
    cancel_url: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        u = (v or "").strip().upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("currency must be ISO-4217 alpha-3")
        return u


class PaymentLinkRequest(BaseModel):
    tx_ref: str
    amount: Decimal
    currency: str
    redirect_url: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_name: str
    shop: str


class PaymentCallback(BaseModel):
    """Asynchronous gateway notification body."""

    model_config = ConfigDict(extra="allow")

    tx_id: str
    tx_ref: str
    shop: str
    account_id: Optional[str] = None
    status: Optional[str] = None

    @field_validator("tx_id", "account_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)


class RefundInitRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    gid: str
    payment_id: str
    amount: Decimal = Field(gt=0)
    currency: str
    test: bool = False

    @field_validator("id", "payment_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)


class RefundSubmission(BaseModel):
    """Outcome of one refund submission; never raised, always recorded."""

    successful: bool
    status_code: Optional[int] = None
    body: Any = None


class MerchantInfo(BaseModel):
    business_name: str
    account_id: Optional[str] = None


class MerchantKeysUpdate(BaseModel):
    shop: str
    sk: str
    pk: str
    test_sk: str
    test_pk: str


class MaskedMerchantKeys(BaseModel):
    prodSk: str = ""
    prodPk: str = ""
    testSk: str = ""
    testPk: str = ""


class CheckoutResult(BaseModel):
    redirect_url: str


class RedirectOutcome(BaseModel):
    """Where to send the payer after a redirect-return; None means plain acknowledgement."""

    status: str
    redirect_url: Optional[str] = None


class RefundAck(BaseModel):
    created: bool
    message: str
