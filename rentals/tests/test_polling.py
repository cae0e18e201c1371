import threading
from unittest import mock

from django.test import SimpleTestCase

from rentals.choices import PaymentStatus, RentalStatus
from rentals.exceptions import UpstreamUnavailable
from rentals.polling import RentalStatePoller, awaiting_counterparty

from .helpers import make_rental


class RentalStatePollerTest(SimpleTestCase):
    """Test the background rental poller"""

    def test_interval_defaults_to_settings(self):
        poller = RentalStatePoller(fetch=mock.Mock())
        self.assertEqual(poller.interval, 0.01)

    def test_awaiting_counterparty(self):
        self.assertTrue(awaiting_counterparty(make_rental()))
        self.assertFalse(awaiting_counterparty(make_rental(
            rental_status=RentalStatus.ACTIVE,
            payment_status=PaymentStatus.PAID,
        )))

    def test_poll_once_reports_update(self):
        rental = make_rental()
        on_update = mock.Mock()
        poller = RentalStatePoller(
            fetch=mock.Mock(return_value=rental), on_update=on_update
        )
        self.assertTrue(poller.poll_once())
        on_update.assert_called_once_with(rental)
        self.assertIs(poller.last_rental, rental)

    def test_poll_once_survives_fetch_errors(self):
        error = UpstreamUnavailable("Marketplace API")
        on_error = mock.Mock()
        poller = RentalStatePoller(
            fetch=mock.Mock(side_effect=error), on_error=on_error
        )
        self.assertTrue(poller.poll_once())
        on_error.assert_called_once_with(error)

    def test_stops_when_rental_settles(self):
        fetch = mock.Mock(side_effect=[
            make_rental(rental_status=RentalStatus.PENDING_OWNER_APPROVAL),
            UpstreamUnavailable("Marketplace API"),
            make_rental(rental_status=RentalStatus.CONFIRMED,
                        payment_status=PaymentStatus.PAID),
        ])
        updates = []
        poller = RentalStatePoller(fetch=fetch, interval=0,
                                   on_update=updates.append)
        poller.start()
        poller._thread.join(5)

        self.assertFalse(poller.is_running)
        self.assertEqual(fetch.call_count, 3)
        self.assertEqual(
            [rental.rental_status for rental in updates],
            [RentalStatus.PENDING_OWNER_APPROVAL, RentalStatus.CONFIRMED],
        )

    def test_cancel_stops_polling(self):
        polled = threading.Event()

        def fetch():
            polled.set()
            return make_rental()

        with RentalStatePoller(fetch=fetch, interval=60) as poller:
            self.assertTrue(polled.wait(5))
            self.assertTrue(poller.is_running)
        self.assertFalse(poller.is_running)
        self.assertTrue(poller.cancelled)

    def test_start_is_idempotent_while_running(self):
        release = threading.Event()

        def fetch():
            release.wait(5)
            return make_rental()

        poller = RentalStatePoller(fetch=fetch, interval=60)
        poller.start()
        thread = poller._thread
        poller.start()
        self.assertIs(poller._thread, thread)
        release.set()
        poller.cancel(timeout=5)
        self.assertFalse(poller.is_running)

    def test_cancel_from_update_callback(self):
        cancelled = threading.Event()
        fetch = mock.Mock(return_value=make_rental())

        def on_update(rental):
            poller.cancel()
            cancelled.set()

        poller = RentalStatePoller(fetch=fetch, interval=60,
                                   on_update=on_update)
        poller.start()

        self.assertTrue(cancelled.wait(5))
        poller._thread.join(5)
        self.assertFalse(poller.is_running)
        self.assertTrue(poller.cancelled)
        fetch.assert_called_once_with()

    def test_cancel_from_error_callback(self):
        cancelled = threading.Event()
        fetch = mock.Mock(side_effect=UpstreamUnavailable("Marketplace API"))

        def on_error(error):
            poller.cancel()
            cancelled.set()

        poller = RentalStatePoller(fetch=fetch, interval=60,
                                   on_error=on_error)
        poller.start()

        self.assertTrue(cancelled.wait(5))
        poller._thread.join(5)
        self.assertFalse(poller.is_running)
        fetch.assert_called_once_with()
