"""
In-memory snapshots of marketplace records.

The marketplace API is the source of truth; these objects mirror what it
returned so the pricing, availability and reconciliation rules can run on
plain values.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from .choices import (
    BillingTier,
    PaymentStatus,
    PayoutMethodType,
    PickupMethod,
    RentalStatus,
    TERMINAL_STATUSES,
)
from .exceptions import ValidationError

ZERO = Decimal("0")


@dataclass(frozen=True)
class ProductPricing:
    """
    Pricing snapshot of a product, taken at booking time.

    Frozen so a later price change on the product can never leak into a
    rental that was already priced.
    """
    product_id: int
    price_per_day: Decimal
    price_per_week: Optional[Decimal] = None
    price_per_month: Optional[Decimal] = None
    min_rental_days: int = 1
    max_rental_days: Optional[int] = None
    security_deposit: Decimal = ZERO
    quantity_available: int = 0

    def __post_init__(self):
        errors = {}
        if self.price_per_day is None or self.price_per_day <= 0:
            errors["price_per_day"] = ["Daily price must be greater than 0."]
        for name in ("price_per_week", "price_per_month"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                errors[name] = ["Price must be greater than 0 when set."]
        if self.min_rental_days < 1:
            errors["min_rental_days"] = ["Minimum rental days must be >= 1."]
        if (self.max_rental_days is not None
                and self.max_rental_days < self.min_rental_days):
            errors["max_rental_days"] = [
                "Maximum rental days must be >= minimum rental days."
            ]
        if self.security_deposit < 0:
            errors["security_deposit"] = ["Security deposit cannot be negative."] # noqa
        if self.quantity_available < 0:
            errors["quantity_available"] = ["Quantity cannot be negative."]
        if errors:
            raise ValidationError("Invalid product pricing.", errors=errors)

    def price_for(self, tier) -> Optional[Decimal]:
        return {
            BillingTier.DAILY: self.price_per_day,
            BillingTier.WEEKLY: self.price_per_week,
            BillingTier.MONTHLY: self.price_per_month,
        }[BillingTier(tier)]


@dataclass
class Rental:
    """Client-side mirror of a marketplace rental."""
    id: int
    rental_uid: str
    renter_id: int
    owner_id: int
    product_id: int
    start_date: date
    end_date: date
    pickup_method: str = PickupMethod.SELF_PICKUP
    rental_status: str = RentalStatus.PENDING_OWNER_APPROVAL
    payment_status: str = PaymentStatus.UNPAID

    # Prices captured at booking time
    rental_price_per_day_at_booking: Optional[Decimal] = None
    rental_price_per_week_at_booking: Optional[Decimal] = None
    rental_price_per_month_at_booking: Optional[Decimal] = None
    rental_pricing_type_used: str = BillingTier.DAILY

    # Amounts
    calculated_subtotal_rental_fee: Decimal = ZERO
    security_deposit_at_booking: Decimal = ZERO
    delivery_fee: Decimal = ZERO
    platform_fee_renter: Decimal = ZERO
    late_fee_calculated: Decimal = ZERO
    total_amount_due: Decimal = ZERO
    final_amount_paid: Optional[Decimal] = None
    refunded_amount: Decimal = ZERO

    # Payment and return tracking
    payment_proof_url: Optional[str] = None
    payment_verification_notes: Optional[str] = None
    return_condition_status: Optional[str] = None
    return_condition_image_urls: List[str] = field(default_factory=list)
    return_method: Optional[str] = None
    notes_from_renter: Optional[str] = None
    notes_from_owner_on_return: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    dispute_reason: Optional[str] = None

    # Timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    payment_verified_at: Optional[datetime] = None
    actual_pickup_time: Optional[datetime] = None
    return_initiated_at: Optional[datetime] = None
    actual_return_time: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __str__(self):
        return f"Rental {self.rental_uid} ({self.rental_status})"

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days + 1

    @property
    def is_terminal(self) -> bool:
        return self.rental_status in TERMINAL_STATUSES

    def expected_total_due(self) -> Decimal:
        """Subtotal + deposit + delivery + platform fee, plus any late fee."""
        return (
            self.calculated_subtotal_rental_fee
            + self.security_deposit_at_booking
            + self.delivery_fee
            + self.platform_fee_renter
            + self.late_fee_calculated
        )


@dataclass(frozen=True)
class PayoutMethod:
    id: int
    owner_id: int
    account_name: str
    account_number: str
    bank_name: Optional[str] = None
    method_type: str = PayoutMethodType.BANK_ACCOUNT
    is_primary: bool = False


@dataclass(frozen=True)
class SlipRecord:
    """Fields read off a bank-transfer slip by the OCR service."""
    account_name: str
    account_number: str
    bank_name: Optional[str]
    amount: Decimal
    transfer_date: datetime
