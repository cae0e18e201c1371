"""
Tiered rental pricing.

Weekly and monthly candidates are billed in whole units (ceil(days / 7) and
ceil(days / 30)); the engine only recommends a tier, it never replaces the
tier a renter picked.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from .choices import BillingTier
from .entities import ProductPricing, ZERO
from .exceptions import DurationOutOfRange, ValidationError

logger = logging.getLogger(__name__)

DAYS_PER_UNIT = {
    BillingTier.DAILY: 1,
    BillingTier.WEEKLY: 7,
    BillingTier.MONTHLY: 30,
}


def ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def rental_days(start_date: date, end_date: date) -> int:
    """Inclusive number of days between start_date and end_date."""
    if start_date is None or end_date is None:
        raise ValidationError(
            "Start and end dates are required.",
            errors={"dates": ["Start and end dates are required."]},
        )
    if end_date < start_date:
        raise ValidationError(
            "End date cannot be before start date.",
            errors={"end_date": ["End date cannot be before start date."]},
        )
    return (end_date - start_date).days + 1


def add_months(start: date, months: int) -> date:
    """Calendar-month addition; the day is clamped to the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def savings_percentage(original: Decimal, discounted: Decimal) -> int:
    if original <= 0:
        return 0
    ratio = (original - discounted) / original * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class TierQuote:
    tier: BillingTier
    unit_rate: Decimal
    units: int
    total_cost: Decimal


@dataclass(frozen=True)
class TierOption:
    tier: BillingTier
    unit_rate: Decimal
    total_cost: Decimal
    savings: Decimal
    savings_percentage: int
    is_optimal: bool


@dataclass(frozen=True)
class TierRecommendation:
    tier: BillingTier
    unit_rate: Decimal
    total_cost: Decimal
    savings_vs_daily: Decimal
    daily_cost: Decimal
    days: int
    candidates: Tuple[TierQuote, ...]


class PricingEngine:
    """Tier selection and unit-based end-date arithmetic."""

    @staticmethod
    def check_duration(pricing: ProductPricing, days: int):
        if days < pricing.min_rental_days:
            raise DurationOutOfRange(
                bound=pricing.min_rental_days, days=days, kind="min"
            )
        if (pricing.max_rental_days is not None
                and days > pricing.max_rental_days):
            raise DurationOutOfRange(
                bound=pricing.max_rental_days, days=days, kind="max"
            )

    @staticmethod
    def candidate_quotes(pricing: ProductPricing,
                         days: int) -> List[TierQuote]:
        """
        Daily is always a candidate; weekly needs a weekly price and at
        least 7 days, monthly a monthly price and at least 30 days.
        """
        quotes = [TierQuote(
            tier=BillingTier.DAILY,
            unit_rate=pricing.price_per_day,
            units=days,
            total_cost=pricing.price_per_day * days,
        )]
        if pricing.price_per_week and days >= 7:
            weeks = ceil_div(days, 7)
            quotes.append(TierQuote(
                tier=BillingTier.WEEKLY,
                unit_rate=pricing.price_per_week,
                units=weeks,
                total_cost=pricing.price_per_week * weeks,
            ))
        if pricing.price_per_month and days >= 30:
            months = ceil_div(days, 30)
            quotes.append(TierQuote(
                tier=BillingTier.MONTHLY,
                unit_rate=pricing.price_per_month,
                units=months,
                total_cost=pricing.price_per_month * months,
            ))
        return quotes

    @staticmethod
    def select_optimal_tier(pricing: ProductPricing, start_date: date,
                            end_date: date) -> TierRecommendation:
        days = rental_days(start_date, end_date)
        PricingEngine.check_duration(pricing, days)

        candidates = PricingEngine.candidate_quotes(pricing, days)
        daily = candidates[0]
        best = daily
        for quote in candidates[1:]:
            if quote.total_cost < best.total_cost:
                best = quote

        savings = max(daily.total_cost - best.total_cost, ZERO)
        logger.debug(
            f"Optimal tier for {days} day(s) of product "
            f"{pricing.product_id}: {best.tier} at {best.total_cost} "
            f"(daily {daily.total_cost})"
        )
        return TierRecommendation(
            tier=best.tier,
            unit_rate=best.unit_rate,
            total_cost=best.total_cost,
            savings_vs_daily=savings,
            daily_cost=daily.total_cost,
            days=days,
            candidates=tuple(candidates),
        )

    @staticmethod
    def compare_tiers(pricing: ProductPricing, start_date: date,
                      end_date: date) -> List[TierOption]:
        """Every eligible tier with its savings, optimal one flagged."""
        recommendation = PricingEngine.select_optimal_tier(
            pricing, start_date, end_date
        )
        daily_cost = recommendation.daily_cost
        return [
            TierOption(
                tier=quote.tier,
                unit_rate=quote.unit_rate,
                total_cost=quote.total_cost,
                savings=daily_cost - quote.total_cost,
                savings_percentage=savings_percentage(
                    daily_cost, quote.total_cost
                ),
                is_optimal=quote.tier == recommendation.tier,
            )
            for quote in recommendation.candidates
        ]

    @staticmethod
    def quote_tier(pricing: ProductPricing, tier, days: int) -> TierQuote:
        """Price an explicit tier choice for a number of days."""
        tier = BillingTier(tier)
        unit_rate = pricing.price_for(tier)
        if not unit_rate:
            raise ValidationError(
                f"This product has no {tier.label.lower()} price.",
                errors={"tier": [f"No {tier.value} price set."]},
            )
        units = ceil_div(days, DAYS_PER_UNIT[tier])
        return TierQuote(
            tier=tier,
            unit_rate=unit_rate,
            units=units,
            total_cost=unit_rate * units,
        )

    @staticmethod
    def end_date_for_units(start_date: date, tier, units: int) -> date:
        """
        End date covering ``units`` whole billing units from start_date.

        Monthly uses calendar months so consecutive bookings do not drift.
        """
        if not units or units < 1:
            raise ValidationError(
                "Number of units must be at least 1.",
                errors={"units": ["Must be at least 1."]},
            )
        tier = BillingTier(tier)
        if tier == BillingTier.MONTHLY:
            return add_months(start_date, units) - timedelta(days=1)
        return start_date + timedelta(days=DAYS_PER_UNIT[tier] * units - 1)

    @staticmethod
    def quote_units(pricing: ProductPricing, start_date: date, tier,
                    units: int) -> Tuple[date, TierQuote]:
        """
        Price a weekly/monthly selection entered as a unit count.

        Returns the derived end date and a quote billed at units * unit price.
        """
        tier = BillingTier(tier)
        end_date = PricingEngine.end_date_for_units(start_date, tier, units)
        PricingEngine.check_duration(
            pricing, rental_days(start_date, end_date)
        )
        unit_rate = pricing.price_for(tier)
        if not unit_rate:
            raise ValidationError(
                f"This product has no {tier.label.lower()} price.",
                errors={"tier": [f"No {tier.value} price set."]},
            )
        return end_date, TierQuote(
            tier=tier,
            unit_rate=unit_rate,
            units=units,
            total_cost=unit_rate * units,
        )

    @staticmethod
    def approximate_days(tier, units: int) -> int:
        """Display-only day count for a unit bucket (30-day months)."""
        return DAYS_PER_UNIT[BillingTier(tier)] * units

    @staticmethod
    def subtotal_from_booking(rental, days: Optional[int] = None) -> Decimal:
        """
        Re-price a rental from the prices stored at booking time.

        Falls back to the daily price when the stored tier has no price.
        """
        days = days if days is not None else rental.duration_days
        per_day = rental.rental_price_per_day_at_booking or ZERO
        tier = BillingTier(rental.rental_pricing_type_used or "daily")

        if tier == BillingTier.WEEKLY and rental.rental_price_per_week_at_booking: # noqa
            return ceil_div(days, 7) * rental.rental_price_per_week_at_booking
        if tier == BillingTier.MONTHLY and rental.rental_price_per_month_at_booking: # noqa
            return ceil_div(days, 30) * rental.rental_price_per_month_at_booking
        return days * per_day
