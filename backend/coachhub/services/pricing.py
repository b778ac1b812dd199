"""Where fees plug into booking creation.

The marketplace's fee formula lives outside this service; ``PricingPolicy``
is the seam it plugs into. The default policy splits a platform percentage
off the quoted price and leaves processor fees to the platform.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..config import Settings


@dataclass(slots=True, frozen=True)
class PriceBreakdown:
    client_charge_cents: int
    platform_fee_cents: int
    coach_payout_cents: int
    processor_fee_cents: int = 0

    def as_columns(self) -> dict[str, int]:
        return {
            "client_charge_cents": self.client_charge_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "coach_payout_cents": self.coach_payout_cents,
            "processor_fee_cents": self.processor_fee_cents,
        }


class PricingPolicy(ABC):
    @abstractmethod
    def quote(self, price_cents: int) -> PriceBreakdown:
        raise NotImplementedError


class PlatformFeePricing(PricingPolicy):
    def __init__(self, fee_percent: int) -> None:
        self.fee_percent = fee_percent

    def quote(self, price_cents: int) -> PriceBreakdown:
        if price_cents <= 0:
            raise ValueError("Price must be positive")
        fee = price_cents * self.fee_percent // 100
        return PriceBreakdown(
            client_charge_cents=price_cents,
            platform_fee_cents=fee,
            coach_payout_cents=price_cents - fee,
        )


def get_pricing_policy(settings: Settings) -> PricingPolicy:
    return PlatformFeePricing(settings.platform_fee_percent)
