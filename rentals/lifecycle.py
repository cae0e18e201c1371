"""
Rental lifecycle state machine.

``transition`` is the only place that decides whether a (status, payment
status, action) triple is legal and what it leads to. ``RentalLifecycle``
applies those decisions to a Rental together with their side effects.
Nothing else should assign ``rental_status`` or ``payment_status``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, FrozenSet, List, Optional, Tuple

from django.utils import timezone

from .choices import (
    PaymentStatus,
    RentalAction,
    RentalStatus,
    ReturnConditionStatus,
    TERMINAL_STATUSES,
)
from .entities import Rental, ZERO
from .exceptions import InvalidTransition, ReconciliationFlagged, ValidationError # noqa

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = frozenset([
    RentalStatus.PENDING_OWNER_APPROVAL,
    RentalStatus.PENDING_PAYMENT,
    RentalStatus.CONFIRMED,
])

RETURNING_STATUSES = frozenset([
    RentalStatus.RETURN_PENDING,
    RentalStatus.LATE_RETURN,
])

REASON_REQUIRED = frozenset([
    RentalAction.REJECT,
    RentalAction.REJECT_PAYMENT,
    RentalAction.CANCEL_BY_RENTER,
    RentalAction.CANCEL_BY_OWNER,
])


@dataclass(frozen=True)
class Rule:
    sources: FrozenSet[str]
    # None means any payment status
    payment_sources: Optional[FrozenSet[str]] = None

    def allows(self, rental_status, payment_status) -> bool:
        if rental_status not in self.sources:
            return False
        if self.payment_sources is None:
            return True
        return payment_status in self.payment_sources


RULES = {
    RentalAction.SUBMIT: Rule(frozenset([RentalStatus.DRAFT])),
    RentalAction.APPROVE: Rule(
        frozenset([RentalStatus.PENDING_OWNER_APPROVAL])
    ),
    RentalAction.REJECT: Rule(
        frozenset([RentalStatus.PENDING_OWNER_APPROVAL])
    ),
    RentalAction.SUBMIT_PAYMENT_PROOF: Rule(
        frozenset([RentalStatus.PENDING_PAYMENT]),
        frozenset([PaymentStatus.UNPAID, PaymentStatus.FAILED]),
    ),
    RentalAction.ACCEPT_PAYMENT: Rule(
        frozenset([RentalStatus.PENDING_PAYMENT]),
        frozenset([PaymentStatus.PENDING_VERIFICATION]),
    ),
    RentalAction.REJECT_PAYMENT: Rule(
        frozenset([RentalStatus.PENDING_PAYMENT]),
        frozenset([PaymentStatus.PENDING_VERIFICATION]),
    ),
    RentalAction.START: Rule(
        frozenset([RentalStatus.CONFIRMED]),
        frozenset([PaymentStatus.PAID]),
    ),
    RentalAction.INITIATE_RETURN: Rule(
        frozenset([RentalStatus.CONFIRMED, RentalStatus.ACTIVE])
    ),
    RentalAction.CONFIRM_RETURN: Rule(RETURNING_STATUSES),
    RentalAction.OPEN_DISPUTE: Rule(
        frozenset([RentalStatus.ACTIVE]) | RETURNING_STATUSES
    ),
    RentalAction.RESOLVE_DISPUTE: Rule(frozenset([RentalStatus.DISPUTE])),
    RentalAction.CANCEL_BY_RENTER: Rule(CANCELLABLE_STATUSES),
    RentalAction.CANCEL_BY_OWNER: Rule(CANCELLABLE_STATUSES),
    RentalAction.EXPIRE: Rule(frozenset([
        RentalStatus.PENDING_OWNER_APPROVAL,
        RentalStatus.PENDING_PAYMENT,
    ])),
    RentalAction.REFUND: Rule(
        TERMINAL_STATUSES,
        frozenset([PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED]),
    ),
}


def _target(rental_status, payment_status, action, context) -> Tuple[str, str]:
    if action == RentalAction.SUBMIT:
        return RentalStatus.PENDING_OWNER_APPROVAL, payment_status
    if action == RentalAction.APPROVE:
        return RentalStatus.PENDING_PAYMENT, payment_status
    if action == RentalAction.REJECT:
        return RentalStatus.REJECTED_BY_OWNER, payment_status
    if action == RentalAction.SUBMIT_PAYMENT_PROOF:
        return rental_status, PaymentStatus.PENDING_VERIFICATION
    if action == RentalAction.ACCEPT_PAYMENT:
        return RentalStatus.CONFIRMED, PaymentStatus.PAID
    if action == RentalAction.REJECT_PAYMENT:
        return rental_status, PaymentStatus.UNPAID
    if action == RentalAction.START:
        return RentalStatus.ACTIVE, payment_status
    if action == RentalAction.INITIATE_RETURN:
        if context["today"] > context["end_date"]:
            return RentalStatus.LATE_RETURN, payment_status
        return RentalStatus.RETURN_PENDING, payment_status
    if action == RentalAction.CONFIRM_RETURN:
        condition = context.get("return_condition_status")
        if (context.get("initiate_claim")
                and condition != ReturnConditionStatus.AS_RENTED):
            return RentalStatus.DISPUTE, payment_status
        return RentalStatus.COMPLETED, payment_status
    if action in (RentalAction.OPEN_DISPUTE,):
        return RentalStatus.DISPUTE, payment_status
    if action == RentalAction.RESOLVE_DISPUTE:
        return RentalStatus.COMPLETED, payment_status
    if action == RentalAction.CANCEL_BY_RENTER:
        return RentalStatus.CANCELLED_BY_RENTER, payment_status
    if action == RentalAction.CANCEL_BY_OWNER:
        return RentalStatus.CANCELLED_BY_OWNER, payment_status
    if action == RentalAction.EXPIRE:
        return RentalStatus.EXPIRED, payment_status
    if action == RentalAction.REFUND:
        if context["refunded_total"] >= context["amount_paid"]:
            return rental_status, PaymentStatus.REFUNDED
        return rental_status, PaymentStatus.PARTIALLY_REFUNDED
    raise InvalidTransition(rental_status, action, payment_status)


def transition(rental_status, payment_status, action,
               **context) -> Tuple[str, str]:
    """
    Resolve a lifecycle action to the next (rental_status, payment_status).

    Raises InvalidTransition for any action not allowed from the current
    state; it is never a silent no-op.
    """
    action = RentalAction(action)
    rule = RULES[action]
    if not rule.allows(rental_status, payment_status):
        logger.error(
            f"Illegal rental transition: {action} from "
            f"{rental_status}/{payment_status}"
        )
        raise InvalidTransition(rental_status, action.value, payment_status)

    if action in REASON_REQUIRED and not (context.get("reason") or "").strip():
        raise ValidationError(
            "A reason is required.", errors={"reason": ["This field is required."]} # noqa
        )

    new_status, new_payment = _target(
        rental_status, payment_status, action, context
    )
    return RentalStatus(new_status), PaymentStatus(new_payment)


def allowed_actions(rental_status, payment_status) -> List[RentalAction]:
    """Actions whose state preconditions hold, for enabling UI controls."""
    return [
        action for action, rule in RULES.items()
        if rule.allows(rental_status, payment_status)
    ]


class RentalLifecycle:
    """Applies lifecycle actions to a Rental snapshot."""

    def __init__(self, rental: Rental,
                 clock: Callable[[], datetime] = timezone.now):
        self.rental = rental
        self.clock = clock

    @property
    def status(self):
        return self.rental.rental_status

    @property
    def payment_status(self):
        return self.rental.payment_status

    def allowed_actions(self) -> List[RentalAction]:
        return allowed_actions(self.status, self.payment_status)

    def can(self, action) -> bool:
        return RULES[RentalAction(action)].allows(
            self.status, self.payment_status
        )

    def ensure_can(self, action):
        """Raise InvalidTransition unless ``action`` is legal right now."""
        if not self.can(action):
            logger.error(
                f"Illegal rental transition: {action} on {self.rental}"
            )
            raise InvalidTransition(self.status, RentalAction(action).value,
                                    self.payment_status)

    def _apply(self, action, **context) -> datetime:
        now = self.clock()
        previous = (self.status, self.payment_status)
        new_status, new_payment = transition(
            self.status, self.payment_status, action, **context
        )
        self.rental.rental_status = new_status
        self.rental.payment_status = new_payment
        self.rental.updated_at = now
        logger.info(
            f"Rental {self.rental.rental_uid}: {action} "
            f"{previous[0]}/{previous[1]} -> {new_status}/{new_payment}"
        )
        return now

    def submit(self):
        self._apply(RentalAction.SUBMIT)
        return self.rental

    def approve(self):
        self._apply(RentalAction.APPROVE)
        return self.rental

    def reject(self, reason: str):
        self._apply(RentalAction.REJECT, reason=reason)
        self.rental.rejection_reason = reason.strip()
        return self.rental

    def submit_payment_proof(self, proof_url: Optional[str] = None,
                             amount_paid: Optional[Decimal] = None):
        self._apply(RentalAction.SUBMIT_PAYMENT_PROOF)
        if proof_url:
            self.rental.payment_proof_url = proof_url
        if amount_paid is not None:
            self.rental.final_amount_paid = amount_paid
        return self.rental

    def accept_payment(self, result=None, override: bool = False,
                       amount_paid: Optional[Decimal] = None,
                       notes: Optional[str] = None):
        """
        Mark the payment as paid and confirm the rental.

        A flagged reconciliation result is only accepted with ``override``
        (the owner or an admin reviewed the slip by hand).
        """
        self.ensure_can(RentalAction.ACCEPT_PAYMENT)
        if result is not None and not result.accepted and not override:
            raise ReconciliationFlagged(result)

        now = self._apply(RentalAction.ACCEPT_PAYMENT)
        self.rental.payment_verified_at = now
        if amount_paid is not None:
            self.rental.final_amount_paid = amount_paid
        elif self.rental.final_amount_paid is None:
            self.rental.final_amount_paid = self.rental.total_amount_due
        if notes:
            self.rental.payment_verification_notes = notes
        return self.rental

    def mark_slip_invalid(self, reason: str):
        """Reject the pending slip; the renter has to upload a new one."""
        self._apply(RentalAction.REJECT_PAYMENT, reason=reason)
        self.rental.payment_verification_notes = reason.strip()
        self.rental.final_amount_paid = None
        return self.rental

    def start(self, pickup_time: Optional[datetime] = None):
        now = self._apply(RentalAction.START)
        self.rental.actual_pickup_time = pickup_time or now
        return self.rental

    def initiate_return(self, return_method: Optional[str] = None):
        """Move to return_pending, or late_return once past the end date."""
        now = self.clock()
        self._apply(
            RentalAction.INITIATE_RETURN,
            today=timezone.localdate(now),
            end_date=self.rental.end_date,
        )
        self.rental.return_initiated_at = now
        if return_method:
            self.rental.return_method = return_method
        return self.rental

    def confirm_return(self, return_condition_status: str,
                       initiate_claim: bool = False,
                       late_fee: Decimal = ZERO,
                       notes: Optional[str] = None,
                       actual_return_time: Optional[datetime] = None,
                       image_urls: Optional[List[str]] = None):
        """Owner confirms the item came back; may branch into a dispute."""
        condition = ReturnConditionStatus(return_condition_status)
        if late_fee and late_fee < 0:
            raise ValidationError(
                "Late fee cannot be negative.",
                errors={"late_fee": ["Late fee cannot be negative."]},
            )
        now = self._apply(
            RentalAction.CONFIRM_RETURN,
            return_condition_status=condition,
            initiate_claim=initiate_claim,
        )
        self.rental.return_condition_status = condition
        self.rental.actual_return_time = actual_return_time or now
        if notes:
            self.rental.notes_from_owner_on_return = notes
        if image_urls:
            self.rental.return_condition_image_urls = list(image_urls)
        if late_fee:
            self.rental.late_fee_calculated = late_fee
            self.rental.total_amount_due = self.rental.expected_total_due()
        return self.rental

    def open_dispute(self, reason: Optional[str] = None):
        self._apply(RentalAction.OPEN_DISPUTE)
        self.rental.dispute_reason = reason
        return self.rental

    def resolve_dispute(self):
        self._apply(RentalAction.RESOLVE_DISPUTE)
        return self.rental

    def cancel(self, by: str, reason: str):
        """Cancel on behalf of the renter or the owner."""
        if by == "renter":
            action = RentalAction.CANCEL_BY_RENTER
        elif by == "owner":
            action = RentalAction.CANCEL_BY_OWNER
        else:
            raise ValidationError(
                "Cancellation must be made by the renter or the owner.",
                errors={"by": [f"Unknown party '{by}'."]},
            )
        now = self._apply(action, reason=reason)
        self.rental.cancellation_reason = reason.strip()
        self.rental.cancelled_at = now
        return self.rental

    def expire(self):
        self._apply(RentalAction.EXPIRE)
        return self.rental

    def refund(self, amount: Decimal):
        """Record a (partial) refund on a closed, paid rental."""
        self.ensure_can(RentalAction.REFUND)
        amount_paid = (self.rental.final_amount_paid
                       if self.rental.final_amount_paid is not None
                       else self.rental.total_amount_due)
        refunded_total = self.rental.refunded_amount + amount
        if amount <= 0 or refunded_total > amount_paid:
            raise ValidationError(
                "Refund amount must be positive and cannot exceed the amount paid.", # noqa
                errors={"amount": [f"Must be between 0 and {amount_paid - self.rental.refunded_amount}."]}, # noqa
            )
        self._apply(
            RentalAction.REFUND,
            refunded_total=refunded_total,
            amount_paid=amount_paid,
        )
        self.rental.refunded_amount = refunded_total
        return self.rental

    def sync(self, server_rental: Rental):
        """
        Adopt the server's snapshot; the marketplace is the source of truth.
        """
        if (server_rental.rental_status, server_rental.payment_status) != (
                self.status, self.payment_status):
            logger.info(
                f"Rental {server_rental.rental_uid} synced: "
                f"{self.status}/{self.payment_status} -> "
                f"{server_rental.rental_status}/{server_rental.payment_status}" # noqa
            )
        self.rental = server_rental
        return self.rental
