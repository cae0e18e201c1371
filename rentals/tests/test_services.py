import threading
from datetime import date
from decimal import Decimal
from unittest import mock

from django.test import SimpleTestCase

from rentals.availability import AvailabilityCalendar
from rentals.choices import (
    AvailabilityStatus,
    BillingTier,
    PaymentStatus,
    PickupMethod,
    RentalStatus,
)
from rentals.exceptions import (
    DateRangeConflict,
    InvalidTransition,
    ReconciliationFlagged,
    SubmissionInProgress,
    UpstreamUnavailable,
    ValidationError,
)
from rentals.fees import FEES_PENDING_WARNING, FeeSchedule
from rentals.services import (
    BookingService,
    PaymentVerificationService,
    RentalService,
    SubmissionGuard,
)

from .helpers import (
    TODAY,
    aware,
    make_payout,
    make_pricing,
    make_rental,
    make_slip,
    rental_payload,
)

START = date(2026, 11, 1)
END = date(2026, 11, 7)
NOW = aware(2026, 11, 3, 12, 0)


def all_available(product_id, start, end):
    return {
        date.fromordinal(ordinal): AvailabilityStatus.AVAILABLE
        for ordinal in range(start.toordinal(), end.toordinal() + 1)
    }


class SubmissionGuardTest(SimpleTestCase):

    def test_second_entry_is_rejected(self):
        guard = SubmissionGuard("booking submission")
        with guard:
            self.assertTrue(guard.busy)
            with self.assertRaises(SubmissionInProgress):
                with guard:
                    pass
        self.assertFalse(guard.busy)

    def test_released_after_error(self):
        guard = SubmissionGuard()
        with self.assertRaises(ValueError):
            with guard:
                raise ValueError("boom")
        self.assertFalse(guard.busy)


class BookingServiceTest(SimpleTestCase):
    """Test quoting and submitting bookings"""

    def setUp(self):
        self.client = mock.Mock()
        self.client.get_fee_schedule.return_value = FeeSchedule(
            platform_fee_percentage=Decimal("5"),
            delivery_fee_base=Decimal("80"),
        )
        self.client.get_availability.side_effect = all_available
        self.calendar = AvailabilityCalendar()
        self.service = BookingService(self.client, calendar=self.calendar)
        self.pricing = make_pricing(price_per_month=None)

    def test_quote_picks_optimal_tier(self):
        quote = self.service.quote(
            self.pricing, START, END, PickupMethod.DELIVERY, today=TODAY
        )
        self.assertEqual(quote.tier, BillingTier.WEEKLY)
        self.assertEqual(quote.subtotal, Decimal("600"))
        self.assertEqual(quote.savings_vs_daily, Decimal("100"))
        self.assertEqual(quote.fees.delivery_fee, Decimal("80.00"))
        self.assertEqual(quote.fees.platform_fee_renter, Decimal("30.00"))
        self.assertEqual(quote.total_due, Decimal("1210.00"))
        self.assertIsNone(quote.warning)
        self.assertEqual(len(quote.options), 2)
        self.assertEqual(quote.days, 7)

    def test_quote_with_explicit_tier(self):
        quote = self.service.quote(
            self.pricing, START, END, tier=BillingTier.DAILY, today=TODAY
        )
        self.assertEqual(quote.tier, BillingTier.DAILY)
        self.assertEqual(quote.subtotal, Decimal("700"))
        self.assertEqual(quote.savings_vs_daily, Decimal("0"))

    def test_quote_warns_when_fees_unknown(self):
        self.client.get_fee_schedule.side_effect = UpstreamUnavailable(
            "Marketplace API"
        )
        quote = self.service.quote(self.pricing, START, END, today=TODAY)
        self.assertTrue(quote.fees_pending)
        self.assertIsNone(quote.total_due)
        self.assertEqual(quote.warning, FEES_PENDING_WARNING)

    def test_quote_units(self):
        quote = self.service.quote_units(
            self.pricing, START, BillingTier.WEEKLY, 2, today=TODAY
        )
        self.assertEqual(quote.end_date, date(2026, 11, 14))
        self.assertEqual(quote.subtotal, Decimal("1200"))
        self.assertEqual(quote.units, 2)

    def test_quote_rejects_past_start(self):
        with self.assertRaises(ValidationError):
            self.service.quote(
                self.pricing, date(2026, 10, 1), END, today=TODAY
            )

    def test_submit_resolves_unknown_dates_first(self):
        self.client.create_rental.return_value = make_rental(
            rental_status=RentalStatus.PENDING_OWNER_APPROVAL
        )
        quote = self.service.quote(self.pricing, START, END, today=TODAY)
        self.assertTrue(quote.availability.needs_confirmation)

        rental = self.service.submit(quote, idempotency_key="book-1", today=TODAY) # noqa

        self.client.get_availability.assert_called_once_with(1, START, END)
        payload = self.client.create_rental.call_args[0][0]
        self.assertEqual(payload["start_date"], "2026-11-01")
        self.assertEqual(payload["rental_pricing_type_used"], "weekly")
        self.assertEqual(
            self.client.create_rental.call_args[1]["idempotency_key"], "book-1"
        )
        self.assertEqual(rental.rental_status, RentalStatus.PENDING_OWNER_APPROVAL) # noqa

    def test_submit_refuses_known_unavailable_dates(self):
        self.client.get_availability.side_effect = None
        self.client.get_availability.return_value = {
            date(2026, 11, 3): AvailabilityStatus.UNAVAILABLE
        }
        quote = self.service.quote(self.pricing, START, END, today=TODAY)
        with self.assertRaises(ValidationError) as ctx:
            self.service.submit(quote, today=TODAY)
        self.assertEqual(ctx.exception.errors, {"dates": ["2026-11-03"]})
        self.client.create_rental.assert_not_called()

    def test_server_conflict_marks_dates_and_requeries(self):
        self.calendar.update(1, all_available(1, START, END))
        quote = self.service.quote(self.pricing, START, END, today=TODAY)
        self.client.create_rental.side_effect = DateRangeConflict(
            dates=[date(2026, 11, 4)]
        )

        with self.assertRaises(DateRangeConflict):
            self.service.submit(quote, today=TODAY)

        self.client.get_availability.assert_called_once_with(1, START, END)
        self.assertEqual(
            self.calendar.status_for(1, date(2026, 11, 4)),
            AvailabilityStatus.UNAVAILABLE,
        )
        self.assertFalse(
            self.calendar.is_range_available(1, START, END, today=TODAY).available # noqa
        )
        self.assertFalse(self.service.guard.busy)

    def test_delivery_needs_address(self):
        self.calendar.update(1, all_available(1, START, END))
        quote = self.service.quote(
            self.pricing, START, END, PickupMethod.DELIVERY, today=TODAY
        )
        with self.assertRaises(ValidationError):
            self.service.submit(quote, today=TODAY)
        self.client.create_rental.assert_not_called()

    def test_concurrent_submit_is_rejected(self):
        self.calendar.update(1, all_available(1, START, END))
        quote = self.service.quote(self.pricing, START, END, today=TODAY)
        entered = threading.Event()
        release = threading.Event()

        def slow_create(payload, idempotency_key=None):
            entered.set()
            release.wait(5)
            return make_rental()

        self.client.create_rental.side_effect = slow_create
        worker = threading.Thread(
            target=self.service.submit, args=(quote,),
            kwargs={"today": TODAY},
        )
        worker.start()
        self.assertTrue(entered.wait(5))
        try:
            with self.assertRaises(SubmissionInProgress):
                self.service.submit(quote, today=TODAY)
        finally:
            release.set()
            worker.join(5)
        self.assertEqual(self.client.create_rental.call_count, 1)


class RentalServiceTest(SimpleTestCase):
    """Test lifecycle actions sent to the marketplace"""

    def setUp(self):
        self.client = mock.Mock()
        self.service = RentalService(self.client, clock=lambda: NOW)

    def test_approve(self):
        rental = make_rental(rental_status=RentalStatus.PENDING_OWNER_APPROVAL)
        self.client.approve_rental.return_value = make_rental()

        result = self.service.approve(rental)

        self.client.approve_rental.assert_called_once_with(7)
        self.assertEqual(result.rental_status, RentalStatus.PENDING_PAYMENT)

    def test_illegal_action_is_not_sent(self):
        rental = make_rental(rental_status=RentalStatus.COMPLETED)
        with self.assertRaises(InvalidTransition):
            self.service.approve(rental)
        self.client.approve_rental.assert_not_called()

    def test_reject_needs_reason(self):
        rental = make_rental(rental_status=RentalStatus.PENDING_OWNER_APPROVAL)
        with self.assertRaises(ValidationError):
            self.service.reject(rental, "")
        self.client.reject_rental.assert_not_called()

    def test_failed_request_leaves_rental_unchanged(self):
        rental = make_rental(rental_status=RentalStatus.PENDING_OWNER_APPROVAL)
        self.client.approve_rental.side_effect = UpstreamUnavailable(
            "Marketplace API"
        )
        with self.assertRaises(UpstreamUnavailable):
            self.service.approve(rental)
        self.assertEqual(
            rental.rental_status, RentalStatus.PENDING_OWNER_APPROVAL
        )

    def test_cancel(self):
        rental = make_rental()
        self.client.cancel_rental.return_value = make_rental(
            rental_status=RentalStatus.CANCELLED_BY_RENTER
        )
        result = self.service.cancel(rental, "renter", "Plans changed")
        self.client.cancel_rental.assert_called_once_with(7, "Plans changed")
        self.assertEqual(result.rental_status, RentalStatus.CANCELLED_BY_RENTER) # noqa

    def test_start_sends_pickup_time(self):
        rental = make_rental(rental_status=RentalStatus.CONFIRMED,
                             payment_status=PaymentStatus.PAID)
        self.client.set_actual_pickup.return_value = make_rental(
            rental_status=RentalStatus.ACTIVE,
            payment_status=PaymentStatus.PAID,
        )
        self.service.start(rental)
        self.client.set_actual_pickup.assert_called_once_with(
            7, NOW.isoformat()
        )

    def test_confirm_return_with_claim(self):
        rental = make_rental(rental_status=RentalStatus.RETURN_PENDING,
                             payment_status=PaymentStatus.PAID)
        self.client.process_return.return_value = make_rental(
            rental_status=RentalStatus.DISPUTE,
            payment_status=PaymentStatus.PAID,
        )
        result = self.service.confirm_return(
            rental, "damaged", initiate_claim=True, notes="Cracked lens"
        )
        kwargs = self.client.process_return.call_args[1]
        self.assertEqual(kwargs["return_condition_status"], "damaged")
        self.assertTrue(kwargs["initiate_claim"])
        self.assertEqual(result.rental_status, RentalStatus.DISPUTE)

    def test_complete_resolves_dispute(self):
        rental = make_rental(rental_status=RentalStatus.DISPUTE,
                             payment_status=PaymentStatus.PAID)
        self.client.complete_rental.return_value = make_rental(
            rental_status=RentalStatus.COMPLETED,
            payment_status=PaymentStatus.PAID,
        )
        result = self.service.complete(rental)
        self.assertEqual(result.rental_status, RentalStatus.COMPLETED)

    def test_initiate_shipping_return_needs_carrier(self):
        rental = make_rental(rental_status=RentalStatus.ACTIVE,
                             payment_status=PaymentStatus.PAID)
        with self.assertRaises(ValidationError):
            self.service.initiate_return(rental, "shipping")
        self.client.initiate_return.assert_not_called()


class PaymentVerificationServiceTest(SimpleTestCase):
    """Test slip reconciliation flow"""

    def setUp(self):
        self.client = mock.Mock()
        self.client.get_payout_methods.return_value = [make_payout()]
        self.client.fetch_proof_image.return_value = b"slip-bytes"
        self.slip_service = mock.Mock()
        self.service = PaymentVerificationService(
            self.client, self.slip_service, clock=lambda: NOW
        )
        self.rental = make_rental(
            payment_status=PaymentStatus.PENDING_VERIFICATION,
            payment_proof_url="https://cdn.rentease.test/slips/7.jpg",
        )
        self.confirmed = make_rental(
            rental_status=RentalStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
        )

    def test_matching_slip_confirms_payment(self):
        self.slip_service.verify_image.return_value = make_slip()
        self.client.verify_payment.return_value = self.confirmed

        rental, result = self.service.verify_slip(self.rental)

        self.assertTrue(result.accepted)
        self.client.fetch_proof_image.assert_called_once_with(
            "https://cdn.rentease.test/slips/7.jpg"
        )
        self.client.verify_payment.assert_called_once_with(7, amount_paid=None)
        self.assertEqual(rental.rental_status, RentalStatus.CONFIRMED)

    def test_flagged_slip_is_left_for_review(self):
        self.slip_service.verify_image.return_value = make_slip(
            amount=Decimal("1210")
        )
        rental, result = self.service.verify_slip(self.rental)

        self.assertFalse(result.accepted)
        self.assertEqual(result.mismatches, ("amount",))
        self.assertIs(rental, self.rental)
        self.client.verify_payment.assert_not_called()

        with self.assertRaises(ReconciliationFlagged):
            self.service._accept(self.rental, result, override=False)

        self.client.verify_payment.return_value = self.confirmed
        accepted = self.service.accept_anyway(self.rental, result)
        self.assertEqual(accepted.payment_status, PaymentStatus.PAID)

    def test_ocr_outage_propagates(self):
        self.slip_service.verify_image.side_effect = UpstreamUnavailable(
            "Slip verification service"
        )
        with self.assertRaises(UpstreamUnavailable):
            self.service.verify_slip(self.rental)
        self.client.verify_payment.assert_not_called()

    def test_needs_uploaded_proof(self):
        rental = make_rental(payment_status=PaymentStatus.PENDING_VERIFICATION)
        with self.assertRaises(ValidationError):
            self.service.reconcile(rental)

    def test_submit_payment_proof(self):
        rental = make_rental(payment_status=PaymentStatus.UNPAID)
        self.client.submit_payment_proof.return_value = make_rental(
            payment_status=PaymentStatus.PENDING_VERIFICATION
        )
        result = self.service.submit_payment_proof(
            rental, b"slip-bytes", amount_paid=Decimal("1200"),
            idempotency_key="proof-1",
        )
        kwargs = self.client.submit_payment_proof.call_args[1]
        self.assertEqual(kwargs["idempotency_key"], "proof-1")
        self.assertEqual(
            result.payment_status, PaymentStatus.PENDING_VERIFICATION
        )

    def test_cannot_submit_proof_twice(self):
        with self.assertRaises(InvalidTransition):
            self.service.submit_payment_proof(self.rental, b"slip-bytes")
        self.client.submit_payment_proof.assert_not_called()

    def test_mark_slip_invalid(self):
        self.client.mark_slip_invalid.return_value = {}
        self.client.get_rental.return_value = make_rental(
            payment_status=PaymentStatus.UNPAID
        )
        result = self.service.mark_slip_invalid(self.rental, "Wrong account")
        self.client.mark_slip_invalid.assert_called_once_with(
            7, "Wrong account"
        )
        self.assertEqual(result.payment_status, PaymentStatus.UNPAID)

    def test_mark_slip_invalid_uses_returned_rental(self):
        self.client.mark_slip_invalid.return_value = rental_payload(
            payment_status="unpaid",
            payment_verification_notes="Wrong account",
        )
        result = self.service.mark_slip_invalid(self.rental, "Wrong account")

        self.client.get_rental.assert_not_called()
        self.assertEqual(result.payment_status, PaymentStatus.UNPAID)
        self.assertEqual(result.rental_uid, "RNT-0007")

    def test_mark_slip_invalid_survives_failed_refresh(self):
        self.client.mark_slip_invalid.return_value = {}
        self.client.get_rental.side_effect = UpstreamUnavailable(
            "Marketplace API"
        )
        with self.assertLogs("rentals.services", level="WARNING"):
            result = self.service.mark_slip_invalid(
                self.rental, "Wrong account"
            )

        self.client.mark_slip_invalid.assert_called_once_with(
            7, "Wrong account"
        )
        self.assertEqual(result.payment_status, PaymentStatus.UNPAID)
        self.assertEqual(result.payment_verification_notes, "Wrong account")
        self.assertEqual(
            self.rental.payment_status, PaymentStatus.PENDING_VERIFICATION
        )
