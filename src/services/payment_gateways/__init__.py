# coding: utf-8
"""
Payment gateways for unlock fees
"""
from typing import Optional

from src.services.payment_gateways.base import (
    GatewayCharge,
    GatewayDispatch,
    GatewayError,
    GatewayReferenceUnknown,
    GatewayRegistry,
    GatewayTimeout,
    PaymentGateway,
)
from src.services.payment_gateways.pawapay_gateway import PawaPayGateway
from src.services.payment_gateways.xentripay_gateway import XentriPayGateway


_registry: Optional[GatewayRegistry] = None


def get_gateway_registry() -> GatewayRegistry:
    """Registry with the configured mobile money and card gateways"""
    global _registry
    if _registry is None:
        _registry = GatewayRegistry.of(PawaPayGateway(), XentriPayGateway())
    return _registry


__all__ = [
    "GatewayCharge",
    "GatewayDispatch",
    "GatewayError",
    "GatewayReferenceUnknown",
    "GatewayRegistry",
    "GatewayTimeout",
    "PaymentGateway",
    "PawaPayGateway",
    "XentriPayGateway",
    "get_gateway_registry",
]
