"""
Slip Verification Service

Sends a bank-transfer slip image to the slip-OCR provider and returns the
parsed transfer as a SlipRecord. The provider being down is reported as
UpstreamUnavailable; a slip is never treated as verified by default.
"""

import logging

import requests
from django.conf import settings

from rentals.entities import SlipRecord
from rentals.exceptions import UpstreamUnavailable, ValidationError
from rentals.serializers import SlipRecordSerializer, load_entity

from .utils import unwrap_envelope

logger = logging.getLogger(__name__)

SERVICE_NAME = "Slip verification service"


class SlipVerificationService:
    """Client for the slip-OCR verification endpoint."""

    def __init__(self, api_url: str = None, token: str = None,
                 session: requests.Session = None, timeout: int = None):
        self.api_url = api_url or settings.SLIP_VERIFICATION_API_URL
        self.token = (token if token is not None
                      else getattr(settings, "SLIP_VERIFICATION_API_TOKEN", "")) # noqa
        self.session = session or requests.Session()
        self.timeout = timeout or getattr(
            settings, "SLIP_VERIFICATION_TIMEOUT", 30
        )

    def verify_image(self, image: bytes,
                     filename: str = "slip.jpg") -> SlipRecord:
        """
        Parse a slip image.

        Args:
            image: Raw image bytes
            filename: Name sent with the multipart upload

        Returns:
            SlipRecord with the transfer's account, amount and date
        """
        if not image:
            raise ValidationError(
                "Payment slip image is empty.",
                errors={"payment_proof_image": ["No slip image found."]},
            )

        headers = {}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        try:
            response = self.session.post(
                self.api_url,
                files={'file': (filename, image)},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Slip verification request failed: {e}")
            raise UpstreamUnavailable(
                SERVICE_NAME, f"Network error: {str(e)}"
            ) from e

        if response.status_code >= 500:
            raise UpstreamUnavailable(
                SERVICE_NAME,
                f"{SERVICE_NAME} error: {response.status_code}",
            )
        if response.status_code >= 400:
            try:
                message = response.json().get('message')
            except ValueError:
                message = None
            raise ValidationError(
                message or 'Slip could not be read.',
                errors={"payment_proof_image": [
                    f"Slip verification failed: {response.status_code}"
                ]},
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.warning(
                f"Slip verification returned a non-JSON body "
                f"({response.status_code})"
            )
            raise UpstreamUnavailable(
                SERVICE_NAME,
                f"{SERVICE_NAME} returned an unreadable response",
            ) from e

        payload = unwrap_envelope(body)
        return load_entity(SlipRecordSerializer, data=payload)
