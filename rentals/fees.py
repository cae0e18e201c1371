import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from .choices import PickupMethod
from .entities import ZERO
from .exceptions import MarketplaceAPIError, UpstreamUnavailable

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

FEES_PENDING_WARNING = (
    "Service fees could not be calculated right now. Final fees will be "
    "confirmed at the payment step."
)


def round_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSchedule:
    """Platform fee settings published by the marketplace."""
    platform_fee_percentage: Optional[Decimal] = None
    platform_fee_flat: Optional[Decimal] = None
    platform_fee_owner_percentage: Optional[Decimal] = None
    delivery_fee_base: Decimal = ZERO


@dataclass(frozen=True)
class FeeEstimate:
    platform_fee_renter: Optional[Decimal]
    delivery_fee: Optional[Decimal]
    total_estimated_fees: Optional[Decimal]
    known: bool = True

    @classmethod
    def unknown(cls):
        """Marker for 'fee service unavailable'; never read as zero."""
        return cls(
            platform_fee_renter=None,
            delivery_fee=None,
            total_estimated_fees=None,
            known=False,
        )


class FeeEstimator:
    """
    Composes renter-side fees from an externally supplied schedule.

    Rates are never hard-coded here: the schedule comes from the
    marketplace through ``schedule_provider``.
    """

    def __init__(self, schedule_provider: Optional[Callable[[], FeeSchedule]] = None): # noqa
        self.schedule_provider = schedule_provider

    @staticmethod
    def estimate_fees(subtotal: Decimal, pickup_method: str,
                      fee_schedule: Optional[FeeSchedule]) -> FeeEstimate:
        if fee_schedule is None:
            return FeeEstimate.unknown()

        if pickup_method == PickupMethod.DELIVERY:
            delivery_fee = round_money(fee_schedule.delivery_fee_base or ZERO)
        else:
            delivery_fee = round_money(ZERO)

        platform_fee = ZERO
        if fee_schedule.platform_fee_percentage:
            platform_fee += (
                subtotal * fee_schedule.platform_fee_percentage / 100
            )
        if fee_schedule.platform_fee_flat:
            platform_fee += fee_schedule.platform_fee_flat
        platform_fee = round_money(platform_fee)

        return FeeEstimate(
            platform_fee_renter=platform_fee,
            delivery_fee=delivery_fee,
            total_estimated_fees=platform_fee + delivery_fee,
        )

    def estimate(self, subtotal: Decimal, pickup_method: str) -> FeeEstimate:
        """Fetch the current schedule and estimate; degrade when it is down."""
        if self.schedule_provider is None:
            return FeeEstimate.unknown()
        try:
            schedule = self.schedule_provider()
        except (UpstreamUnavailable, MarketplaceAPIError) as e:
            logger.warning(f"Fee schedule unavailable, fees pending: {e}")
            return FeeEstimate.unknown()
        return self.estimate_fees(subtotal, pickup_method, schedule)

    @staticmethod
    def compose_total_due(subtotal: Decimal, security_deposit: Decimal,
                          fees: FeeEstimate) -> Optional[Decimal]:
        """
        subtotal + deposit + delivery + platform fee, or None while the fees
        are unknown.
        """
        if not fees.known:
            return None
        return round_money(
            subtotal
            + (security_deposit or ZERO)
            + fees.delivery_fee
            + fees.platform_fee_renter
        )
