"""
Marketplace API Client

This module wraps the marketplace REST API used by the rental core:
- Product availability and fee settings
- Rental creation and lifecycle actions (approve, reject, cancel, return)
- Payment proof upload and verification
- Owner payout methods for slip reconciliation

GET requests are idempotent and retried a bounded number of times on
network errors and 5xx responses. Mutating requests are sent exactly once.
"""

import logging
import time
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings

from rentals.entities import PayoutMethod, Rental
from rentals.exceptions import (
    DateRangeConflict,
    MarketplaceAPIError,
    UpstreamUnavailable,
    ValidationError,
)
from rentals.fees import FeeSchedule
from rentals.serializers import (
    AvailabilityListSerializer,
    FeeScheduleSerializer,
    PayoutMethodSerializer,
    RentalSerializer,
    availability_items,
    load_entity,
)

from .utils import unwrap_envelope

logger = logging.getLogger(__name__)

SERVICE_NAME = "Marketplace API"
RETRY_BACKOFF_SECONDS = 0.5


def _error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("message") or body.get("error") or str(body)
    return str(body)


def _error_payload(response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"detail": body}


def _conflicting_dates(payload: Dict[str, Any]) -> List[date]:
    """Dates the server reported as taken, from errors or the top level."""
    errors = payload.get("errors")
    values = []
    if isinstance(errors, dict):
        values = errors.get("unavailable_dates") or []
    values = values or payload.get("unavailable_dates") or []

    dates = []
    for value in values:
        try:
            dates.append(date.fromisoformat(str(value)[:10]))
        except ValueError:
            logger.warning(f"Ignoring unparseable conflict date: {value}")
    return dates


class MarketplaceClient:
    """HTTP client for the marketplace REST API."""

    def __init__(self, base_url: str = None, token: str = None,
                 session: requests.Session = None, timeout: int = None,
                 max_get_retries: int = None,
                 retry_backoff: float = RETRY_BACKOFF_SECONDS):
        self.base_url = (base_url or settings.MARKETPLACE_API_URL).rstrip("/")
        self.token = (token if token is not None
                      else getattr(settings, "MARKETPLACE_API_TOKEN", ""))
        self.session = session or requests.Session()
        self.timeout = timeout or getattr(settings, "MARKETPLACE_TIMEOUT", 30)
        self.max_get_retries = (
            max_get_retries if max_get_retries is not None
            else getattr(settings, "MARKETPLACE_GET_MAX_RETRIES", 2)
        )
        self.retry_backoff = retry_backoff

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, idempotency_key: str = None,
                 authorize: bool = True) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token and authorize:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _raise_for_response(self, response):
        status_code = response.status_code
        if status_code < 400:
            return
        message = _error_message(response)
        payload = _error_payload(response)
        if status_code == 409:
            raise DateRangeConflict(
                message=message, dates=_conflicting_dates(payload)
            )
        if status_code in (400, 422):
            raise ValidationError(message, errors=payload.get("errors") or {})
        if status_code >= 500:
            raise UpstreamUnavailable(
                SERVICE_NAME, f"{SERVICE_NAME} error {status_code}: {message}"
            )
        raise MarketplaceAPIError(status_code, message, payload)

    def _is_own_url(self, url: str) -> bool:
        return url == self.base_url or url.startswith(self.base_url + "/")

    def _get(self, path: str, params: Dict[str, Any] = None, raw=False):
        url = self._url(path)
        # Credentials only go to the marketplace host
        headers = self._headers(authorize=self._is_own_url(url))
        attempts = self.max_get_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.get(
                    url, params=params, headers=headers,
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                logger.warning(
                    f"GET {url} failed (attempt {attempt}/{attempts}): {e}"
                )
                if attempt == attempts:
                    raise UpstreamUnavailable(
                        SERVICE_NAME, f"Network error: {str(e)}"
                    ) from e
            else:
                if response.status_code >= 500 and attempt < attempts:
                    logger.warning(
                        f"GET {url} returned {response.status_code} "
                        f"(attempt {attempt}/{attempts}), retrying"
                    )
                else:
                    self._raise_for_response(response)
                    if raw:
                        return response
                    return unwrap_envelope(response.json())
            time.sleep(self.retry_backoff * attempt)

    def _send(self, method: str, path: str, json: Dict[str, Any] = None,
              data: Dict[str, Any] = None, files=None,
              idempotency_key: str = None):
        """Send a mutating request once; never retried."""
        url = self._url(path)
        try:
            response = self.session.request(
                method, url, json=json, data=data, files=files,
                headers=self._headers(idempotency_key), timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error(f"{method} {url} failed: {e}")
            raise UpstreamUnavailable(
                SERVICE_NAME, f"Network error: {str(e)}"
            ) from e
        self._raise_for_response(response)
        if not response.content:
            return {}
        return unwrap_envelope(response.json())

    # ------------------------------------------------------------------
    # Products and settings
    # ------------------------------------------------------------------

    def get_availability(self, product_id, start: date,
                         end: date) -> Dict[date, str]:
        payload = self._get(
            f"/products/{product_id}/availability",
            params={"from": start.isoformat(), "to": end.isoformat()},
        )
        return load_entity(
            AvailabilityListSerializer, data=availability_items(payload)
        )

    def get_fee_schedule(self) -> FeeSchedule:
        payload = self._get("/settings/fee-settings")
        return load_entity(FeeScheduleSerializer, data=payload)

    # ------------------------------------------------------------------
    # Rentals
    # ------------------------------------------------------------------

    def _rental(self, payload) -> Rental:
        return load_entity(RentalSerializer, data=payload)

    def create_rental(self, payload: Dict[str, Any],
                      idempotency_key: str = None) -> Rental:
        return self._rental(self._send(
            "POST", "/rentals", json=payload, idempotency_key=idempotency_key
        ))

    def get_rental(self, rental_id) -> Rental:
        return self._rental(self._get(f"/rentals/{rental_id}"))

    def approve_rental(self, rental_id) -> Rental:
        return self._rental(self._send("PUT", f"/rentals/{rental_id}/approve"))

    def reject_rental(self, rental_id, reason: str) -> Rental:
        return self._rental(self._send(
            "PUT", f"/rentals/{rental_id}/reject", json={"reason": reason}
        ))

    def cancel_rental(self, rental_id, reason: str) -> Rental:
        return self._rental(self._send(
            "PUT", f"/rentals/{rental_id}/cancel", json={"reason": reason}
        ))

    def submit_payment_proof(self, rental_id, image,
                             amount_paid: Decimal = None,
                             transaction_time: str = None,
                             idempotency_key: str = None) -> Rental:
        data = {}
        if transaction_time:
            data["transaction_time"] = transaction_time
        if amount_paid is not None:
            data["amount_paid"] = str(amount_paid)
        return self._rental(self._send(
            "PUT", f"/rentals/{rental_id}/payment-proof",
            data=data, files={"payment_proof_image": image},
            idempotency_key=idempotency_key,
        ))

    def verify_payment(self, rental_id, amount_paid: Decimal = None) -> Rental: # noqa
        payload = None
        if amount_paid is not None:
            payload = {"amount_paid": str(amount_paid)}
        return self._rental(self._send(
            "PUT", f"/rentals/{rental_id}/verify-payment", json=payload
        ))

    def mark_slip_invalid(self, rental_id, reason: str):
        return self._send(
            "POST", f"/rentals/{rental_id}/mark-slip-invalid",
            json={"reason": reason},
        )

    def set_actual_pickup(self, rental_id, actual_pickup_time: str) -> Rental:
        return self._rental(self._send(
            "PUT", f"/rentals/{rental_id}/actual-pickup",
            json={"actual_pickup_time": actual_pickup_time},
        ))

    def initiate_return(self, rental_id, return_method: str,
                        return_details: Dict[str, Any] = None,
                        notes: str = None, shipping_receipt=None) -> Rental:
        data = {"return_method": return_method}
        for key, value in (return_details or {}).items():
            if value:
                data[f"return_details[{key}]"] = value
        if notes:
            data["notes"] = notes
        files = None
        if shipping_receipt is not None:
            files = {"shipping_receipt_image": shipping_receipt}
        return self._rental(self._send(
            "POST", f"/rentals/{rental_id}/initiate-return",
            data=data, files=files,
        ))

    def process_return(self, rental_id, actual_return_time: str,
                       return_condition_status: str, notes: str = None,
                       initiate_claim: bool = None,
                       images: Optional[List[Any]] = None) -> Rental:
        data = {
            "actual_return_time": actual_return_time,
            "return_condition_status": return_condition_status,
        }
        if notes:
            data["notes_from_owner_on_return"] = notes
        if initiate_claim is not None:
            data["initiate_claim"] = str(bool(initiate_claim)).lower()
        files = [
            ("return_condition_images[]", image) for image in (images or [])
        ]
        return self._rental(self._send(
            "PUT", f"/rentals/{rental_id}/return",
            data=data, files=files or None,
        ))

    def complete_rental(self, rental_id) -> Rental:
        return self._rental(self._send("PUT", f"/rentals/{rental_id}/complete")) # noqa

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    def get_payout_methods(self, owner_id) -> List[PayoutMethod]:
        payload = self._get(f"/owners/{owner_id}/payout-methods")
        return load_entity(PayoutMethodSerializer, data=payload, many=True)

    def fetch_proof_image(self, url: str) -> bytes:
        response = self._get(url, raw=True)
        return response.content
