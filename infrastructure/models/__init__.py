"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import (
    MerchantConfigModel,
    OrderModel,
    RefundModel,
    ProgressGuardModel,
    GatewayTransactionModel,
    GatewayOrderModel,
)

__all__ = [
    "Base",
    "metadata",
    "MerchantConfigModel",
    "OrderModel",
    "RefundModel",
    "ProgressGuardModel",
    "GatewayTransactionModel",
    "GatewayOrderModel",
]
