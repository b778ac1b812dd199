from .gateway import Authorization, BasePaymentGateway, get_configured_gateway, get_gateway
from .stub import StubGateway

__all__ = [
    "Authorization",
    "BasePaymentGateway",
    "get_configured_gateway",
    "get_gateway",
    "StubGateway",
]
