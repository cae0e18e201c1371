"""
Background refresh of a rental while it waits on the other party.

The poller owns one daemon thread. ``cancel()`` (or leaving the ``with``
block) stops it; it also stops by itself once ``keep_polling`` says the
rental no longer needs watching.
"""
import logging
from threading import Event, Lock, Thread, current_thread
from typing import Callable, Optional

from django.conf import settings

from .choices import AWAITING_COUNTERPARTY_STATUSES
from .entities import Rental

logger = logging.getLogger(__name__)


def awaiting_counterparty(rental: Rental) -> bool:
    return rental.rental_status in AWAITING_COUNTERPARTY_STATUSES


class RentalStatePoller:
    """Re-fetches a rental on a fixed interval until cancelled."""

    def __init__(self, fetch: Callable[[], Rental],
                 interval: Optional[float] = None,
                 on_update: Optional[Callable[[Rental], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 keep_polling: Callable[[Rental], bool] = awaiting_counterparty): # noqa
        self.fetch = fetch
        self.interval = (interval if interval is not None
                         else settings.RENTAL_POLL_INTERVAL_SECONDS)
        self.on_update = on_update
        self.on_error = on_error
        self.keep_polling = keep_polling
        self.last_rental: Optional[Rental] = None

        self._cancel_event = Event()
        self._lock = Lock()
        self._thread: Optional[Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def start(self) -> "RentalStatePoller":
        with self._lock:
            if self.is_running:
                return self
            self._cancel_event.clear()
            self._thread = Thread(target=self._run, daemon=True)
            self._thread.start()
        logger.debug(f"Rental poller started (every {self.interval}s)")
        return self

    def cancel(self, timeout: Optional[float] = None) -> None:
        self._cancel_event.set()
        thread = self._thread
        # cancel() may be called from on_update/on_error on the poller thread
        if (thread is not None and thread.is_alive()
                and thread is not current_thread()):
            thread.join(timeout)
        logger.debug("Rental poller cancelled")

    def poll_once(self) -> bool:
        """
        Fetch once and report the result.

        Returns False when polling should stop. A failed fetch is reported
        to ``on_error`` and polling carries on.
        """
        try:
            rental = self.fetch()
        except Exception as e:
            logger.warning(f"Rental poll failed: {e}")
            if self.on_error is not None:
                self.on_error(e)
            return True

        self.last_rental = rental
        if self.on_update is not None:
            self.on_update(rental)
        if not self.keep_polling(rental):
            logger.info(f"Stopped polling {rental}")
            return False
        return True

    def _run(self):
        while not self._cancel_event.is_set():
            if not self.poll_once():
                break
            if self._cancel_event.wait(self.interval):
                break

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_value, traceback):
        self.cancel()
        return False
