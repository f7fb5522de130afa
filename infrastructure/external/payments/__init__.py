"""
Gateway adapters.
"""
from .gateway_client import GatewayClient

__all__ = ["GatewayClient"]
