from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from ...config import Settings, get_settings


@dataclass(slots=True, frozen=True)
class Authorization:
    gateway_ref: str
    client_secret: str | None
    status: str


class BasePaymentGateway(ABC):
    """Card processor capability used by the payment orchestrator.

    Every method either returns or raises one of the ``GatewayError`` family;
    implementations must not retry on their own.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    def create_authorization(
        self,
        amount_cents: int,
        currency: str,
        destination_account_id: str | None,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Authorization:
        raise NotImplementedError

    @abstractmethod
    def capture(self, gateway_ref: str, idempotency_key: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def cancel_authorization(self, gateway_ref: str, idempotency_key: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def refund(
        self,
        gateway_ref: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        raise NotImplementedError


def get_gateway(settings: Settings) -> BasePaymentGateway:
    if settings.payment_provider == "stub":
        from .stub import StubGateway

        return StubGateway(settings)
    if settings.payment_provider == "stripe":
        from .stripe_gateway import StripeGateway

        return StripeGateway(settings)
    raise ValueError(f"Unsupported payment provider {settings.payment_provider}")


@lru_cache(maxsize=1)
def get_configured_gateway() -> BasePaymentGateway:
    return get_gateway(get_settings())
