from django.db import models
from django.utils.translation import gettext_lazy as _


class RentalStatus(models.TextChoices):
    DRAFT = "draft", _("Draft")
    PENDING_OWNER_APPROVAL = "pending_owner_approval", _("Pending Owner Approval") # noqa
    PENDING_PAYMENT = "pending_payment", _("Pending Payment")
    CONFIRMED = "confirmed", _("Confirmed")
    ACTIVE = "active", _("Active")
    RETURN_PENDING = "return_pending", _("Return Pending")
    LATE_RETURN = "late_return", _("Late Return")
    COMPLETED = "completed", _("Completed")
    CANCELLED_BY_RENTER = "cancelled_by_renter", _("Cancelled by Renter")
    CANCELLED_BY_OWNER = "cancelled_by_owner", _("Cancelled by Owner")
    REJECTED_BY_OWNER = "rejected_by_owner", _("Rejected by Owner")
    DISPUTE = "dispute", _("Dispute")
    EXPIRED = "expired", _("Expired")


class PaymentStatus(models.TextChoices):
    UNPAID = "unpaid", _("Unpaid")
    PENDING_VERIFICATION = "pending_verification", _("Pending Verification")
    PAID = "paid", _("Paid")
    FAILED = "failed", _("Failed")
    REFUNDED = "refunded", _("Refunded")
    PARTIALLY_REFUNDED = "partially_refunded", _("Partially Refunded")


class PickupMethod(models.TextChoices):
    SELF_PICKUP = "self_pickup", _("Self Pickup")
    DELIVERY = "delivery", _("Delivery")


class ReturnConditionStatus(models.TextChoices):
    AS_RENTED = "as_rented", _("As Rented")
    MINOR_WEAR = "minor_wear", _("Minor Wear")
    DAMAGED = "damaged", _("Damaged")
    LOST = "lost", _("Lost")


class ReturnMethod(models.TextChoices):
    SHIPPING = "shipping", _("Shipping")
    IN_PERSON = "in_person", _("In Person")


class BillingTier(models.TextChoices):
    DAILY = "daily", _("Daily")
    WEEKLY = "weekly", _("Weekly")
    MONTHLY = "monthly", _("Monthly")


class AvailabilityStatus(models.TextChoices):
    AVAILABLE = "available", _("Available")
    UNAVAILABLE = "unavailable", _("Unavailable")
    UNKNOWN = "unknown", _("Unknown")


class PayoutMethodType(models.TextChoices):
    BANK_ACCOUNT = "bank_account", _("Bank Account")
    PROMPTPAY = "promptpay", _("PromptPay")


class ReconciliationVerdict(models.TextChoices):
    ACCEPTED = "accepted", _("Accepted")
    FLAGGED = "flagged", _("Flagged")


class RentalAction(models.TextChoices):
    SUBMIT = "submit", _("Submit Request")
    APPROVE = "approve", _("Approve")
    REJECT = "reject", _("Reject")
    SUBMIT_PAYMENT_PROOF = "submit_payment_proof", _("Submit Payment Proof")
    ACCEPT_PAYMENT = "accept_payment", _("Accept Payment")
    REJECT_PAYMENT = "reject_payment", _("Mark Slip Invalid")
    START = "start", _("Start Rental")
    INITIATE_RETURN = "initiate_return", _("Initiate Return")
    CONFIRM_RETURN = "confirm_return", _("Confirm Return")
    OPEN_DISPUTE = "open_dispute", _("Open Dispute")
    RESOLVE_DISPUTE = "resolve_dispute", _("Resolve Dispute")
    CANCEL_BY_RENTER = "cancel_by_renter", _("Cancel by Renter")
    CANCEL_BY_OWNER = "cancel_by_owner", _("Cancel by Owner")
    EXPIRE = "expire", _("Expire")
    REFUND = "refund", _("Refund")


TERMINAL_STATUSES = frozenset([
    RentalStatus.COMPLETED,
    RentalStatus.CANCELLED_BY_RENTER,
    RentalStatus.CANCELLED_BY_OWNER,
    RentalStatus.REJECTED_BY_OWNER,
    RentalStatus.EXPIRED,
])

# Statuses in which the rental waits on the other party; detail views poll
# while a rental sits in one of these.
AWAITING_COUNTERPARTY_STATUSES = frozenset([
    RentalStatus.PENDING_OWNER_APPROVAL,
    RentalStatus.PENDING_PAYMENT,
    RentalStatus.RETURN_PENDING,
    RentalStatus.LATE_RETURN,
])
