import logging
import threading
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from django.utils import timezone

from .choices import AvailabilityStatus
from .exceptions import ValidationError

logger = logging.getLogger(__name__)


def daterange(start: date, end: date) -> Iterator[date]:
    """Every calendar day from start to end, both inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def validate_range(start: date, end: date, today: Optional[date] = None):
    """
    Reject a selection before any range query is issued.

    Raises ValidationError when the end date precedes the start date or the
    start date lies in the past.
    """
    if start is None or end is None:
        raise ValidationError(
            "Start and end dates are required.",
            errors={"dates": ["Start and end dates are required."]},
        )
    if end < start:
        raise ValidationError(
            "End date cannot be before start date.",
            errors={"end_date": ["End date cannot be before start date."]},
        )
    today = today or timezone.localdate()
    if start < today:
        raise ValidationError(
            "Start date cannot be in the past.",
            errors={"start_date": ["Start date cannot be in the past."]},
        )


@dataclass(frozen=True)
class RangeAvailability:
    available: bool
    unavailable_dates: Tuple[date, ...] = ()
    # Not yet confirmed by the server; selectable but must be re-resolved
    # before the booking is submitted.
    unknown_dates: Tuple[date, ...] = ()

    @property
    def needs_confirmation(self) -> bool:
        return self.available and bool(self.unknown_dates)


class AvailabilityCalendar:
    """
    Per-product, per-day availability with three states.

    Dates that were never fetched are UNKNOWN: they stay selectable, but the
    server remains the final arbiter when the booking is created.
    """

    def __init__(self):
        self._days: Dict[int, Dict[date, AvailabilityStatus]] = {}
        self._lock = threading.RLock()

    def status_for(self, product_id, day: date) -> AvailabilityStatus:
        with self._lock:
            return self._days.get(product_id, {}).get(
                day, AvailabilityStatus.UNKNOWN
            )

    def rendering_class(self, product_id, day: date) -> str:
        """CSS-ish class for a calendar cell: available/unavailable/unknown."""
        return str(self.status_for(product_id, day).value)

    def is_selectable(self, product_id, day: date) -> bool:
        return self.status_for(product_id, day) != AvailabilityStatus.UNAVAILABLE # noqa

    def update(self, product_id, statuses: Dict[date, str]):
        """Merge a server availability map into the calendar."""
        with self._lock:
            days = self._days.setdefault(product_id, {})
            for day, status in statuses.items():
                days[day] = AvailabilityStatus(status)
        logger.debug(
            f"Availability updated for product {product_id}: "
            f"{len(statuses)} day(s)"
        )

    def mark_unavailable(self, product_id, dates: Iterable[date]):
        """Record dates lost to a concurrent booking."""
        dates = list(dates)
        with self._lock:
            days = self._days.setdefault(product_id, {})
            for day in dates:
                days[day] = AvailabilityStatus.UNAVAILABLE
        if dates:
            logger.info(
                f"Marked {len(dates)} date(s) unavailable for product "
                f"{product_id}"
            )

    def is_range_available(self, product_id, start: date, end: date,
                           today: Optional[date] = None) -> RangeAvailability:
        validate_range(start, end, today=today)

        unavailable: List[date] = []
        unknown: List[date] = []
        for day in daterange(start, end):
            status = self.status_for(product_id, day)
            if status == AvailabilityStatus.UNAVAILABLE:
                unavailable.append(day)
            elif status == AvailabilityStatus.UNKNOWN:
                unknown.append(day)

        return RangeAvailability(
            available=not unavailable,
            unavailable_dates=tuple(unavailable),
            unknown_dates=tuple(unknown),
        )

    def refresh(self, product_id, start: date, end: date,
                fetch: Callable[[int, date, date], Dict[date, str]],
                today: Optional[date] = None) -> RangeAvailability:
        """
        Re-query the server for [start, end] and merge the answer.

        ``fetch`` is usually MarketplaceClient.get_availability.
        """
        validate_range(start, end, today=today)
        statuses = fetch(product_id, start, end)
        self.update(product_id, statuses)
        return self.is_range_available(product_id, start, end, today=today)
