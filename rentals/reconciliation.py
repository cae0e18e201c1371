"""
Bank-slip reconciliation.

The tolerances here (whitespace-insensitive account names, an amount window
of 5 currency units, a 2-day date grace) were tuned against real slip OCR
noise and are business policy. Change them only through settings.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from rentease.modules.utils import mask_character

from .choices import ReconciliationVerdict
from .entities import PayoutMethod, Rental, SlipRecord
from .exceptions import ValidationError

logger = logging.getLogger(__name__)

WHITESPACE = re.compile(r"\s+")


def select_payout_method(methods: Iterable[PayoutMethod]) -> PayoutMethod:
    """The owner's primary payout method, else the first one registered."""
    methods = list(methods)
    if not methods:
        raise ValidationError(
            "The owner has no payout method registered.",
            errors={"payout_method": ["No payout method registered."]},
        )
    for method in methods:
        if method.is_primary:
            return method
    return methods[0]


def _as_aware(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


@dataclass(frozen=True)
class ReconciliationResult:
    account_match: bool
    amount_match: bool
    date_match: bool
    verdict: ReconciliationVerdict
    mismatches: Tuple[str, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.verdict == ReconciliationVerdict.ACCEPTED


class PaymentReconciliation:
    """Compares a parsed slip with the owner's payout account and the rental."""

    @staticmethod
    def amount_tolerance() -> Decimal:
        return Decimal(getattr(settings, "SLIP_AMOUNT_TOLERANCE", 5))

    @staticmethod
    def date_grace() -> timedelta:
        return timedelta(days=getattr(settings, "SLIP_DATE_GRACE_DAYS", 2))

    @staticmethod
    def normalize_name(name: Optional[str]) -> str:
        """Drop every whitespace character; case is kept."""
        return WHITESPACE.sub("", name or "")

    @staticmethod
    def account_mismatches(slip: SlipRecord,
                           payout: PayoutMethod) -> Tuple[str, ...]:
        mismatches = []
        if slip.account_number != payout.account_number:
            mismatches.append("account_number")
        if (slip.bank_name or "").strip() != (payout.bank_name or "").strip():
            mismatches.append("bank_name")
        if (PaymentReconciliation.normalize_name(slip.account_name)
                != PaymentReconciliation.normalize_name(payout.account_name)):
            mismatches.append("account_name")
        return tuple(mismatches)

    @staticmethod
    def amount_matches(slip: SlipRecord, rental: Rental) -> bool:
        difference = abs(Decimal(slip.amount) - Decimal(rental.total_amount_due)) # noqa
        return difference < PaymentReconciliation.amount_tolerance()

    @staticmethod
    def date_window(rental: Rental) -> Tuple[datetime, datetime]:
        """[created_at - grace, updated_at + grace]; missing updated_at is now.""" # noqa
        grace = PaymentReconciliation.date_grace()
        created_at = _as_aware(rental.created_at)
        updated_at = _as_aware(rental.updated_at) or timezone.now()
        if created_at is None:
            created_at = updated_at
        return created_at - grace, updated_at + grace

    @staticmethod
    def date_matches(slip: SlipRecord, rental: Rental) -> bool:
        transferred_at = _as_aware(slip.transfer_date)
        if transferred_at is None:
            return False
        earliest, latest = PaymentReconciliation.date_window(rental)
        return earliest <= transferred_at <= latest

    @staticmethod
    def reconcile(slip: SlipRecord, rental: Rental,
                  payout: PayoutMethod) -> ReconciliationResult:
        """
        Decide whether a slip pays this rental into the owner's account.

        Each sub-match is computed independently. The verdict is ACCEPTED
        only when all three hold; otherwise FLAGGED with every disagreeing
        field listed for the human reviewer.
        """
        mismatches = list(PaymentReconciliation.account_mismatches(slip, payout)) # noqa
        account_match = not mismatches

        amount_match = PaymentReconciliation.amount_matches(slip, rental)
        if not amount_match:
            mismatches.append("amount")

        date_match = PaymentReconciliation.date_matches(slip, rental)
        if not date_match:
            mismatches.append("transfer_date")

        verdict = (ReconciliationVerdict.ACCEPTED
                   if account_match and amount_match and date_match
                   else ReconciliationVerdict.FLAGGED)

        logger.info(
            f"Slip reconciliation for rental {rental.rental_uid}: {verdict} "
            f"(account {mask_character(slip.account_number or '', 6)}, "
            f"amount {slip.amount}/{rental.total_amount_due}, "
            f"mismatches={mismatches or 'none'})"
        )
        return ReconciliationResult(
            account_match=account_match,
            amount_match=amount_match,
            date_match=date_match,
            verdict=verdict,
            mismatches=tuple(mismatches),
        )
