"""
Reconciliation settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so upstream endpoints and policy knobs
can be tuned without touching the application bootstrap settings.
Environment keys are prefixed with ``RECON_``, e.g.
``RECON_GATEWAY__CALLBACK_SECRET`` or ``RECON_POLICY__IGNORE_FAILED_CALLBACKS``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class HttpTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class HttpRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class GatewaySettings(BaseModel):
    api_url: str = "https://api.flutterwave.com"
    test_api_url: str = "https://api.flutterwave.com"
    # 异步回调 HMAC 共享密钥
    callback_secret: Optional[str] = None

    def base_url(self, is_test: bool) -> str:
        return (self.test_api_url if is_test else self.api_url).rstrip("/")


class RefundApiSettings(BaseModel):
    api_url: str = "http://localhost:9000"
    test_api_url: str = "http://localhost:9000"
    # 退款请求 HMAC 共享密钥
    secret: Optional[str] = None

    def base_url(self, is_test: bool) -> str:
        return (self.test_api_url if is_test else self.api_url).rstrip("/")


class StorefrontSettings(BaseModel):
    api_version: str = "2023-10"
    api_key: Optional[str] = None
    payments_app_handle: str = "Flutterwave Merchant"


class ReconciliationPolicy(BaseModel):
    callback_forward_delay_seconds: float = 5.0
    refund_retry_interval_seconds: int = 300
    refund_max_retries: int = 7
    scheduler_base_seconds: float = 58.0
    scheduler_jitter_min_seconds: float = 1.0
    scheduler_jitter_max_seconds: float = 2.0
    # 异步回调中显式的 failed 通知默认忽略，等待重定向/补偿确认
    ignore_failed_callbacks: bool = True


class ReconciliationSettings(BaseSettings):
    timeouts: HttpTimeouts = Field(default_factory=HttpTimeouts)
    retry: HttpRetry = Field(default_factory=HttpRetry)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    refund_api: RefundApiSettings = Field(default_factory=RefundApiSettings)
    storefront: StorefrontSettings = Field(default_factory=StorefrontSettings)
    policy: ReconciliationPolicy = Field(default_factory=ReconciliationPolicy)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RECON_",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


reconciliation_settings = ReconciliationSettings()
