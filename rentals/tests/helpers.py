import json
from datetime import date, datetime, timezone as dt_timezone
from decimal import Decimal

import requests

from rentals.choices import PaymentStatus, PickupMethod, RentalStatus
from rentals.entities import PayoutMethod, ProductPricing, Rental, SlipRecord

TODAY = date(2026, 10, 20)


def aware(*args):
    return datetime(*args, tzinfo=dt_timezone.utc)


def make_response(status_code=200, payload=None, content=None):
    response = requests.Response()
    response.status_code = status_code
    if content is not None:
        response._content = content
    elif payload is not None:
        response._content = json.dumps(payload).encode()
    else:
        response._content = b""
    return response


def make_pricing(**overrides):
    values = {
        "product_id": 1,
        "price_per_day": Decimal("100"),
        "price_per_week": Decimal("600"),
        "price_per_month": Decimal("2500"),
        "min_rental_days": 1,
        "max_rental_days": None,
        "security_deposit": Decimal("500"),
        "quantity_available": 1,
    }
    values.update(overrides)
    return ProductPricing(**values)


def make_rental(**overrides):
    values = {
        "id": 7,
        "rental_uid": "RNT-0007",
        "renter_id": 10,
        "owner_id": 20,
        "product_id": 1,
        "start_date": date(2026, 11, 1),
        "end_date": date(2026, 11, 7),
        "pickup_method": PickupMethod.SELF_PICKUP,
        "rental_status": RentalStatus.PENDING_PAYMENT,
        "payment_status": PaymentStatus.UNPAID,
        "rental_price_per_day_at_booking": Decimal("100"),
        "rental_price_per_week_at_booking": Decimal("600"),
        "calculated_subtotal_rental_fee": Decimal("600"),
        "security_deposit_at_booking": Decimal("500"),
        "platform_fee_renter": Decimal("100"),
        "total_amount_due": Decimal("1200"),
        "rental_pricing_type_used": "weekly",
        "created_at": aware(2026, 10, 28, 9, 0),
        "updated_at": aware(2026, 10, 29, 9, 0),
    }
    values.update(overrides)
    return Rental(**values)


def rental_payload(**overrides):
    payload = {
        "id": 7,
        "rental_uid": "RNT-0007",
        "renter_id": 10,
        "owner_id": 20,
        "product_id": 1,
        "start_date": "2026-11-01",
        "end_date": "2026-11-07T00:00:00.000Z",
        "pickup_method": "self_pickup",
        "rental_status": "pending_payment",
        "payment_status": "unpaid",
        "rental_price_per_day_at_booking": "100.00",
        "rental_price_per_week_at_booking": "600.00",
        "rental_pricing_type_used": "weekly",
        "calculated_subtotal_rental_fee": "600.00",
        "security_deposit_at_booking": "500.00",
        "delivery_fee": None,
        "platform_fee_renter": "100.00",
        "total_amount_due": "1200.00",
        "payment_proof_url": "https://cdn.rentease.test/slips/7.jpg",
        "created_at": "2026-10-28T09:00:00Z",
        "updated_at": "2026-10-29T09:00:00Z",
    }
    payload.update(overrides)
    return payload


def make_payout(**overrides):
    values = {
        "id": 3,
        "owner_id": 20,
        "account_name": "Somchai Jaidee",
        "account_number": "1234567890",
        "bank_name": "Kasikorn Bank",
        "is_primary": True,
    }
    values.update(overrides)
    return PayoutMethod(**values)


def make_slip(**overrides):
    values = {
        "account_name": "Somchai  Jaidee",
        "account_number": "1234567890",
        "bank_name": "Kasikorn Bank",
        "amount": Decimal("1200"),
        "transfer_date": aware(2026, 10, 29, 10, 30),
    }
    values.update(overrides)
    return SlipRecord(**values)
