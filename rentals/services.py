"""
Booking, rental and payment orchestration.

These services sit between the pure rules (pricing, fees, lifecycle,
reconciliation) and the marketplace API. Every lifecycle call checks the
transition locally first, then lets the server apply it and adopts the
server's snapshot.
"""
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.utils import timezone

from rentease.modules.utils import generate_idempotency_key

from .availability import AvailabilityCalendar, RangeAvailability, validate_range # noqa
from .choices import BillingTier, PickupMethod, RentalAction, RentalStatus
from .entities import ProductPricing, Rental, ZERO
from .exceptions import (
    DateRangeConflict,
    SubmissionInProgress,
    UpstreamUnavailable,
    ValidationError,
)
from .fees import FEES_PENDING_WARNING, FeeEstimate, FeeEstimator
from .lifecycle import RentalLifecycle
from .pricing import PricingEngine, TierOption, TierQuote, rental_days
from .reconciliation import (
    PaymentReconciliation,
    ReconciliationResult,
    select_payout_method,
)
from .serializers import (
    CreateRentalSerializer,
    InitiateReturnSerializer,
    PaymentProofSerializer,
    ProcessReturnSerializer,
    ReasonSerializer,
    RentalSerializer,
    load_entity,
    validate_or_raise,
)

logger = logging.getLogger(__name__)


class SubmissionGuard:
    """
    Allows one submission at a time.

    Entering while another submission holds the guard raises
    SubmissionInProgress instead of waiting.
    """

    def __init__(self, name: str = "submission"):
        self.name = name
        self._lock = Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def __enter__(self):
        if not self._lock.acquire(blocking=False):
            logger.warning(f"Duplicate {self.name} ignored while in flight")
            raise SubmissionInProgress(
                f"A {self.name} is already in progress."
            )
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self._lock.release()
        return False


@dataclass(frozen=True)
class BookingQuote:
    """Everything the booking form shows before the renter submits."""
    product_id: int
    start_date: date
    end_date: date
    pickup_method: str
    tier: BillingTier
    units: int
    unit_rate: Decimal
    subtotal: Decimal
    security_deposit: Decimal
    fees: FeeEstimate
    total_due: Optional[Decimal]
    availability: RangeAvailability
    options: Tuple[TierOption, ...] = ()
    savings_vs_daily: Decimal = ZERO

    @property
    def days(self) -> int:
        return rental_days(self.start_date, self.end_date)

    @property
    def fees_pending(self) -> bool:
        return not self.fees.known

    @property
    def warning(self) -> Optional[str]:
        return FEES_PENDING_WARNING if self.fees_pending else None

    @property
    def can_submit(self) -> bool:
        return self.availability.available


class BookingService:
    """Prices a date range and turns a quote into a rental request."""

    def __init__(self, client, calendar: AvailabilityCalendar = None,
                 fee_estimator: FeeEstimator = None):
        self.client = client
        self.calendar = calendar or AvailabilityCalendar()
        self.fee_estimator = fee_estimator or FeeEstimator(
            schedule_provider=client.get_fee_schedule
        )
        self.guard = SubmissionGuard("booking submission")

    def _build_quote(self, pricing: ProductPricing, start_date: date,
                     end_date: date, pickup_method: str,
                     tier_quote: TierQuote, options=(),
                     savings=ZERO, today: Optional[date] = None) -> BookingQuote: # noqa
        availability = self.calendar.is_range_available(
            pricing.product_id, start_date, end_date, today=today
        )
        fees = self.fee_estimator.estimate(tier_quote.total_cost, pickup_method) # noqa
        total_due = FeeEstimator.compose_total_due(
            tier_quote.total_cost, pricing.security_deposit, fees
        )
        if not fees.known:
            logger.warning(
                f"Quote for product {pricing.product_id} has pending fees"
            )
        return BookingQuote(
            product_id=pricing.product_id,
            start_date=start_date,
            end_date=end_date,
            pickup_method=PickupMethod(pickup_method),
            tier=tier_quote.tier,
            units=tier_quote.units,
            unit_rate=tier_quote.unit_rate,
            subtotal=tier_quote.total_cost,
            security_deposit=pricing.security_deposit,
            fees=fees,
            total_due=total_due,
            availability=availability,
            options=tuple(options),
            savings_vs_daily=savings,
        )

    def quote(self, pricing: ProductPricing, start_date: date,
              end_date: date, pickup_method: str = PickupMethod.SELF_PICKUP,
              tier=None, today: Optional[date] = None) -> BookingQuote:
        """
        Price [start_date, end_date].

        Without ``tier`` the cheapest eligible tier is used; with it the
        renter's explicit choice is priced.
        """
        validate_range(start_date, end_date, today=today)

        options = PricingEngine.compare_tiers(pricing, start_date, end_date)
        optimal = next(option for option in options if option.is_optimal)
        if tier is None or BillingTier(tier) == optimal.tier:
            recommendation = PricingEngine.select_optimal_tier(
                pricing, start_date, end_date
            )
            tier_quote = next(
                quote for quote in recommendation.candidates
                if quote.tier == recommendation.tier
            )
        else:
            tier_quote = PricingEngine.quote_tier(
                pricing, tier, rental_days(start_date, end_date)
            )
        daily_cost = options[0].total_cost
        return self._build_quote(
            pricing, start_date, end_date, pickup_method, tier_quote,
            options=options,
            savings=max(daily_cost - tier_quote.total_cost, ZERO),
            today=today,
        )

    def quote_units(self, pricing: ProductPricing, start_date: date, tier,
                    units: int,
                    pickup_method: str = PickupMethod.SELF_PICKUP,
                    today: Optional[date] = None) -> BookingQuote:
        """Price a weekly/monthly selection entered as a number of units."""
        end_date, tier_quote = PricingEngine.quote_units(
            pricing, start_date, tier, units
        )
        validate_range(start_date, end_date, today=today)
        return self._build_quote(
            pricing, start_date, end_date, pickup_method, tier_quote,
            today=today,
        )

    def confirm_availability(self, quote: BookingQuote,
                             today: Optional[date] = None) -> RangeAvailability: # noqa
        """Resolve any unknown dates in the quote against the server."""
        availability = quote.availability
        if availability.unknown_dates:
            availability = self.calendar.refresh(
                quote.product_id, quote.start_date, quote.end_date,
                self.client.get_availability, today=today,
            )
        return availability

    def submit(self, quote: BookingQuote, delivery_address_id: int = None,
               notes: str = None, idempotency_key: str = None,
               today: Optional[date] = None) -> Rental:
        """
        Create the rental request for a quote.

        Dates already known to be taken are a ValidationError and nothing
        is sent. The local check is otherwise advisory: if the server reports
        a conflict the lost dates are marked unavailable, the range is
        re-queried and the DateRangeConflict is re-raised for re-prompting.
        """
        with self.guard:
            availability = self.confirm_availability(quote, today=today)
            if not availability.available:
                raise ValidationError(
                    "Some of the selected dates are unavailable.",
                    errors={"dates": [
                        day.isoformat()
                        for day in availability.unavailable_dates
                    ]},
                )

            payload = {
                "product_id": quote.product_id,
                "start_date": quote.start_date.isoformat(),
                "end_date": quote.end_date.isoformat(),
                "pickup_method": str(quote.pickup_method),
                "rental_pricing_type_used": str(quote.tier),
            }
            if delivery_address_id is not None:
                payload["delivery_address_id"] = delivery_address_id
            if notes:
                payload["notes_from_renter"] = notes
            validate_or_raise(CreateRentalSerializer, data=payload)

            idempotency_key = idempotency_key or generate_idempotency_key()
            try:
                rental = self.client.create_rental(
                    payload, idempotency_key=idempotency_key
                )
            except DateRangeConflict as e:
                self._handle_conflict(quote, e, today=today)
                raise

        logger.info(
            f"Rental request {rental.rental_uid} created for product "
            f"{quote.product_id} ({quote.start_date} - {quote.end_date})"
        )
        return rental

    def _handle_conflict(self, quote: BookingQuote, conflict: DateRangeConflict, # noqa
                         today: Optional[date] = None):
        logger.warning(
            f"Booking for product {quote.product_id} lost a date race: "
            f"{[day.isoformat() for day in conflict.dates]}"
        )
        try:
            self.calendar.refresh(
                quote.product_id, quote.start_date, quote.end_date,
                self.client.get_availability, today=today,
            )
        except UpstreamUnavailable as e:
            logger.warning(f"Could not re-query availability: {e}")
        self.calendar.mark_unavailable(quote.product_id, conflict.dates)


class RentalService:
    """Owner and renter lifecycle actions on an existing rental."""

    def __init__(self, client, clock: Callable[[], datetime] = timezone.now):
        self.client = client
        self.clock = clock

    def _rehearse(self, rental: Rental, action: str, *args, **kwargs):
        """
        Run the action on a copy so illegal moves and missing inputs fail
        before anything is sent.
        """
        lifecycle = RentalLifecycle(replace(rental), clock=self.clock)
        getattr(lifecycle, action)(*args, **kwargs)
        return RentalLifecycle(rental, clock=self.clock)

    def refresh(self, rental: Rental) -> Rental:
        return self.client.get_rental(rental.id)

    def approve(self, rental: Rental) -> Rental:
        lifecycle = self._rehearse(rental, "approve")
        return lifecycle.sync(self.client.approve_rental(rental.id))

    def reject(self, rental: Rental, reason: str) -> Rental:
        validate_or_raise(ReasonSerializer, data={"reason": reason})
        lifecycle = self._rehearse(rental, "reject", reason)
        return lifecycle.sync(self.client.reject_rental(rental.id, reason))

    def cancel(self, rental: Rental, by: str, reason: str) -> Rental:
        validate_or_raise(ReasonSerializer, data={"reason": reason})
        lifecycle = self._rehearse(rental, "cancel", by, reason)
        return lifecycle.sync(self.client.cancel_rental(rental.id, reason))

    def start(self, rental: Rental,
              pickup_time: Optional[datetime] = None) -> Rental:
        pickup_time = pickup_time or self.clock()
        lifecycle = self._rehearse(rental, "start", pickup_time)
        return lifecycle.sync(self.client.set_actual_pickup(
            rental.id, pickup_time.isoformat()
        ))

    def initiate_return(self, rental: Rental, return_method: str,
                        return_details: Dict[str, Any] = None,
                        notes: str = None, shipping_receipt=None) -> Rental:
        data = dict(return_details or {})
        data["return_method"] = return_method
        if notes:
            data["notes"] = notes
        validate_or_raise(InitiateReturnSerializer, data=data)
        lifecycle = self._rehearse(rental, "initiate_return", return_method)
        return lifecycle.sync(self.client.initiate_return(
            rental.id, return_method,
            return_details=return_details, notes=notes,
            shipping_receipt=shipping_receipt,
        ))

    def confirm_return(self, rental: Rental, return_condition_status: str,
                       initiate_claim: bool = False, notes: str = None,
                       actual_return_time: Optional[datetime] = None,
                       images: Optional[List[Any]] = None) -> Rental:
        """Owner confirms the item came back; a claim opens a dispute."""
        actual_return_time = actual_return_time or self.clock()
        validate_or_raise(ProcessReturnSerializer, data={
            "actual_return_time": actual_return_time.isoformat(),
            "return_condition_status": return_condition_status,
            "notes_from_owner_on_return": notes or "",
            "initiate_claim": initiate_claim,
        })
        lifecycle = self._rehearse(
            rental, "confirm_return", return_condition_status,
            initiate_claim=initiate_claim, notes=notes,
            actual_return_time=actual_return_time,
        )
        return lifecycle.sync(self.client.process_return(
            rental.id,
            actual_return_time=actual_return_time.isoformat(),
            return_condition_status=return_condition_status,
            notes=notes,
            initiate_claim=initiate_claim,
            images=images,
        ))

    def resolve_dispute(self, rental: Rental) -> Rental:
        lifecycle = self._rehearse(rental, "resolve_dispute")
        return lifecycle.sync(self.client.complete_rental(rental.id))

    def complete(self, rental: Rental) -> Rental:
        if rental.rental_status == RentalStatus.DISPUTE:
            return self.resolve_dispute(rental)
        lifecycle = RentalLifecycle(rental, clock=self.clock)
        lifecycle.ensure_can(RentalAction.CONFIRM_RETURN)
        return lifecycle.sync(self.client.complete_rental(rental.id))


class PaymentVerificationService:
    """Payment proof upload and slip reconciliation."""

    def __init__(self, client, slip_service,
                 clock: Callable[[], datetime] = timezone.now):
        self.client = client
        self.slip_service = slip_service
        self.clock = clock
        self.guard = SubmissionGuard("payment proof submission")

    def submit_payment_proof(self, rental: Rental, image,
                             amount_paid: Decimal = None,
                             transaction_time: Optional[datetime] = None,
                             idempotency_key: str = None) -> Rental:
        validate_or_raise(PaymentProofSerializer, data={
            "amount_paid": amount_paid,
            "transaction_time": (transaction_time.isoformat()
                                 if transaction_time else None),
        })
        with self.guard:
            lifecycle = RentalLifecycle(rental, clock=self.clock)
            lifecycle.ensure_can(RentalAction.SUBMIT_PAYMENT_PROOF)
            server_rental = self.client.submit_payment_proof(
                rental.id, image,
                amount_paid=amount_paid,
                transaction_time=(transaction_time.isoformat()
                                  if transaction_time else None),
                idempotency_key=idempotency_key or generate_idempotency_key(), # noqa
            )
        logger.info(f"Payment proof submitted for rental {rental.rental_uid}")
        return lifecycle.sync(server_rental)

    def reconcile(self, rental: Rental) -> ReconciliationResult:
        """
        OCR the uploaded slip and compare it with the owner's account.

        UpstreamUnavailable from the OCR service propagates; a slip is
        never reported as accepted without being read.
        """
        RentalLifecycle(rental).ensure_can(RentalAction.ACCEPT_PAYMENT)
        if not rental.payment_proof_url:
            raise ValidationError(
                "No payment proof has been uploaded for this rental.",
                errors={"payment_proof_url": ["No payment proof uploaded."]},
            )
        payout = select_payout_method(
            self.client.get_payout_methods(rental.owner_id)
        )
        image = self.client.fetch_proof_image(rental.payment_proof_url)
        slip = self.slip_service.verify_image(image)
        return PaymentReconciliation.reconcile(slip, rental, payout)

    def verify_slip(self, rental: Rental) -> Tuple[Rental, ReconciliationResult]: # noqa
        """
        Reconcile the slip and confirm the payment when it matches.

        A flagged result leaves the rental untouched for the owner to
        accept anyway or mark the slip invalid.
        """
        result = self.reconcile(rental)
        if not result.accepted:
            logger.warning(
                f"Slip for rental {rental.rental_uid} flagged for review: "
                f"{', '.join(result.mismatches)}"
            )
            return rental, result
        return self._accept(rental, result, override=False), result

    def accept_anyway(self, rental: Rental,
                      result: Optional[ReconciliationResult] = None,
                      amount_paid: Decimal = None) -> Rental:
        """Owner reviewed a flagged slip by hand and accepts it."""
        return self._accept(
            rental, result, override=True, amount_paid=amount_paid
        )

    def _accept(self, rental: Rental, result, override: bool,
                amount_paid: Decimal = None) -> Rental:
        lifecycle = RentalLifecycle(replace(rental), clock=self.clock)
        lifecycle.accept_payment(
            result=result, override=override, amount_paid=amount_paid
        )
        server_rental = self.client.verify_payment(
            rental.id, amount_paid=amount_paid
        )
        logger.info(
            f"Payment for rental {rental.rental_uid} verified"
            f"{' (manual override)' if override else ''}"
        )
        return RentalLifecycle(rental, clock=self.clock).sync(server_rental)

    def mark_slip_invalid(self, rental: Rental, reason: str) -> Rental:
        validate_or_raise(ReasonSerializer, data={"reason": reason})
        lifecycle = RentalLifecycle(replace(rental), clock=self.clock)
        lifecycle.mark_slip_invalid(reason)
        payload = self.client.mark_slip_invalid(rental.id, reason)
        logger.info(f"Slip for rental {rental.rental_uid} marked invalid")

        if isinstance(payload, dict) and payload.get("rental_status"):
            return load_entity(RentalSerializer, data=payload)
        # Endpoint acknowledged without a rental body; refetch for the
        # server's view, falling back to the locally applied change.
        try:
            return self.client.get_rental(rental.id)
        except UpstreamUnavailable as e:
            logger.warning(
                f"Could not refresh rental {rental.rental_uid} after marking "
                f"the slip invalid: {e}"
            )
            return lifecycle.rental
