from rest_framework import serializers

from .choices import (
    AvailabilityStatus,
    BillingTier,
    PaymentStatus,
    PayoutMethodType,
    PickupMethod,
    RentalStatus,
    ReturnConditionStatus,
    ReturnMethod,
)
from .entities import PayoutMethod, ProductPricing, Rental, SlipRecord, ZERO
from .exceptions import MarketplaceAPIError, ValidationError
from .fees import FeeSchedule

# Older API builds report proof-under-review on the rental status and use a
# bare "pending" payment status.
LEGACY_RENTAL_STATUSES = {"pending_verification": RentalStatus.PENDING_PAYMENT}
LEGACY_PAYMENT_STATUSES = {"pending": PaymentStatus.PENDING_VERIFICATION}


def validate_or_raise(serializer_class, data, **kwargs):
    """Validate outgoing/user data; errors become a user-facing ValidationError.""" # noqa
    serializer = serializer_class(data=data, **kwargs)
    if not serializer.is_valid():
        raise ValidationError("Invalid input.", errors=serializer.errors)
    return serializer


def load_entity(serializer_class, data, **kwargs):
    """Build entities from an API payload; bad payloads are upstream errors."""
    serializer = serializer_class(data=data, **kwargs)
    if not serializer.is_valid():
        raise MarketplaceAPIError(
            None,
            message=f"Malformed {serializer_class.__name__} payload.",
            payload=serializer.errors,
        )
    return serializer.save()


class LenientDateField(serializers.DateField):
    """Accepts plain dates as well as ISO datetimes (date part is kept)."""

    def to_internal_value(self, value):
        if isinstance(value, str) and "T" in value:
            value = value.split("T", 1)[0]
        return super().to_internal_value(value)


def money_field(**kwargs):
    kwargs.setdefault("max_digits", 14)
    kwargs.setdefault("decimal_places", 2)
    return serializers.DecimalField(**kwargs)


def optional_money_field(**kwargs):
    return money_field(required=False, allow_null=True, **kwargs)


class ProductPricingSerializer(serializers.Serializer):
    id = serializers.IntegerField()
    rental_price_per_day = money_field()
    rental_price_per_week = optional_money_field()
    rental_price_per_month = optional_money_field()
    min_rental_duration_days = serializers.IntegerField(
        required=False, allow_null=True, min_value=1
    )
    max_rental_duration_days = serializers.IntegerField(
        required=False, allow_null=True, min_value=1
    )
    security_deposit = optional_money_field(min_value=0)
    quantity_available = serializers.IntegerField(
        required=False, allow_null=True, min_value=0
    )

    def validate_rental_price_per_day(self, value):
        if value <= 0:
            raise serializers.ValidationError("Must be greater than 0.")
        return value

    def validate(self, attrs):
        min_days = attrs.get("min_rental_duration_days") or 1
        max_days = attrs.get("max_rental_duration_days")
        if max_days is not None and max_days < min_days:
            raise serializers.ValidationError({
                "max_rental_duration_days": (
                    "Must be greater than or equal to the minimum duration."
                )
            })
        return attrs

    def create(self, validated_data):
        return ProductPricing(
            product_id=validated_data["id"],
            price_per_day=validated_data["rental_price_per_day"],
            price_per_week=validated_data.get("rental_price_per_week") or None,
            price_per_month=validated_data.get("rental_price_per_month") or None, # noqa
            min_rental_days=validated_data.get("min_rental_duration_days") or 1, # noqa
            max_rental_days=validated_data.get("max_rental_duration_days"),
            security_deposit=validated_data.get("security_deposit") or ZERO,
            quantity_available=validated_data.get("quantity_available") or 0,
        )


class RentalSerializer(serializers.Serializer):
    MONEY_FIELDS = [
        "calculated_subtotal_rental_fee", "security_deposit_at_booking",
        "delivery_fee", "platform_fee_renter", "late_fee_calculated",
        "total_amount_due",
    ]

    id = serializers.IntegerField()
    rental_uid = serializers.CharField()
    renter_id = serializers.IntegerField()
    owner_id = serializers.IntegerField()
    product_id = serializers.IntegerField()
    start_date = LenientDateField()
    end_date = LenientDateField()
    pickup_method = serializers.ChoiceField(
        choices=PickupMethod.choices, required=False,
        default=PickupMethod.SELF_PICKUP,
    )
    rental_status = serializers.CharField()
    payment_status = serializers.CharField(
        required=False, default=PaymentStatus.UNPAID
    )

    rental_price_per_day_at_booking = optional_money_field()
    rental_price_per_week_at_booking = optional_money_field()
    rental_price_per_month_at_booking = optional_money_field()
    rental_pricing_type_used = serializers.ChoiceField(
        choices=BillingTier.choices, required=False, allow_null=True
    )

    calculated_subtotal_rental_fee = optional_money_field()
    security_deposit_at_booking = optional_money_field()
    delivery_fee = optional_money_field()
    platform_fee_renter = optional_money_field()
    late_fee_calculated = optional_money_field()
    total_amount_due = optional_money_field()
    final_amount_paid = optional_money_field()

    payment_proof_url = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )
    payment_verification_notes = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )
    return_condition_status = serializers.ChoiceField(
        choices=ReturnConditionStatus.choices, required=False, allow_null=True
    )
    return_condition_image_urls = serializers.ListField(
        child=serializers.CharField(), required=False, allow_null=True
    )
    notes_from_renter = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )
    notes_from_owner_on_return = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )
    cancellation_reason = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )

    created_at = serializers.DateTimeField(required=False, allow_null=True)
    updated_at = serializers.DateTimeField(required=False, allow_null=True)
    payment_verified_at = serializers.DateTimeField(
        required=False, allow_null=True
    )
    actual_pickup_time = serializers.DateTimeField(
        required=False, allow_null=True
    )
    return_initiated_at = serializers.DateTimeField(
        required=False, allow_null=True
    )
    actual_return_time = serializers.DateTimeField(
        required=False, allow_null=True
    )
    cancelled_at = serializers.DateTimeField(required=False, allow_null=True)

    def validate_rental_status(self, value):
        value = LEGACY_RENTAL_STATUSES.get(value, value)
        if value not in RentalStatus.values:
            raise serializers.ValidationError(
                f"Unknown rental status '{value}'."
            )
        return RentalStatus(value)

    def validate_payment_status(self, value):
        value = LEGACY_PAYMENT_STATUSES.get(value, value)
        if value not in PaymentStatus.values:
            raise serializers.ValidationError(
                f"Unknown payment status '{value}'."
            )
        return PaymentStatus(value)

    def validate(self, attrs):
        if attrs["end_date"] < attrs["start_date"]:
            raise serializers.ValidationError(
                {"end_date": "End date cannot be before start date."}
            )
        if self.initial_data.get("rental_status") in LEGACY_RENTAL_STATUSES:
            attrs["payment_status"] = PaymentStatus.PENDING_VERIFICATION
        return attrs

    def create(self, validated_data):
        for name in self.MONEY_FIELDS:
            if validated_data.get(name) is None:
                validated_data[name] = ZERO
        if not validated_data.get("rental_pricing_type_used"):
            validated_data["rental_pricing_type_used"] = BillingTier.DAILY
        if validated_data.get("return_condition_image_urls") is None:
            validated_data["return_condition_image_urls"] = []
        return Rental(**validated_data)


class PayoutMethodSerializer(serializers.Serializer):
    id = serializers.IntegerField()
    owner_id = serializers.IntegerField()
    method_type = serializers.ChoiceField(
        choices=PayoutMethodType.choices, required=False,
        default=PayoutMethodType.BANK_ACCOUNT,
    )
    account_name = serializers.CharField()
    account_number = serializers.CharField()
    bank_name = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )
    is_primary = serializers.BooleanField(required=False, default=False)

    def create(self, validated_data):
        return PayoutMethod(**validated_data)


class SlipAmountField(serializers.Field):
    """OCR returns the amount either as a number or as {"amount": n, ...}."""

    default_error_messages = {
        "invalid": "A valid amount is required.",
    }

    def to_internal_value(self, data):
        if isinstance(data, dict):
            data = data.get("amount")
        field = money_field()
        try:
            return field.to_internal_value(data)
        except serializers.ValidationError:
            self.fail("invalid")

    def to_representation(self, value):
        return value


class SlipRecordSerializer(serializers.Serializer):
    account_name = serializers.CharField(allow_blank=True)
    account_number = serializers.CharField(allow_blank=True)
    bank_name = serializers.CharField(
        required=False, allow_null=True, allow_blank=True
    )
    amount = SlipAmountField()
    date = serializers.DateTimeField(source="transfer_date")

    def create(self, validated_data):
        return SlipRecord(
            account_name=validated_data["account_name"],
            account_number=validated_data["account_number"],
            bank_name=validated_data.get("bank_name"),
            amount=validated_data["amount"],
            transfer_date=validated_data["transfer_date"],
        )


class FeeScheduleSerializer(serializers.Serializer):
    platform_fee_percentage = serializers.DecimalField(
        max_digits=6, decimal_places=3, required=False, allow_null=True,
        min_value=0,
    )
    platform_fee_flat = optional_money_field(min_value=0)
    platform_fee_owner_percentage = serializers.DecimalField(
        max_digits=6, decimal_places=3, required=False, allow_null=True,
        min_value=0,
    )
    delivery_fee_base = optional_money_field(min_value=0)

    def create(self, validated_data):
        return FeeSchedule(
            platform_fee_percentage=validated_data.get("platform_fee_percentage"), # noqa
            platform_fee_flat=validated_data.get("platform_fee_flat"),
            platform_fee_owner_percentage=validated_data.get(
                "platform_fee_owner_percentage"
            ),
            delivery_fee_base=validated_data.get("delivery_fee_base") or ZERO,
        )


class AvailabilityDaySerializer(serializers.Serializer):
    date = LenientDateField()
    status = serializers.ChoiceField(
        choices=AvailabilityStatus.choices, required=False
    )
    is_available = serializers.BooleanField(required=False, allow_null=True)

    def validate(self, attrs):
        if "status" not in attrs:
            is_available = attrs.get("is_available")
            if is_available is None:
                attrs["status"] = AvailabilityStatus.UNKNOWN
            elif is_available:
                attrs["status"] = AvailabilityStatus.AVAILABLE
            else:
                attrs["status"] = AvailabilityStatus.UNAVAILABLE
        return attrs


class AvailabilityListSerializer(serializers.ListSerializer):
    child = AvailabilityDaySerializer()

    def create(self, validated_data):
        return {
            item["date"]: AvailabilityStatus(item["status"])
            for item in validated_data
        }


def availability_items(payload):
    """Normalize ``{date: status}`` maps into the list form."""
    if isinstance(payload, dict):
        return [
            {"date": day, "status": status}
            for day, status in payload.items()
        ]
    return payload or []


class CreateRentalSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    start_date = serializers.DateField()
    end_date = serializers.DateField()
    pickup_method = serializers.ChoiceField(choices=PickupMethod.choices)
    rental_pricing_type_used = serializers.ChoiceField(
        choices=BillingTier.choices, required=False
    )
    delivery_address_id = serializers.IntegerField(
        required=False, allow_null=True
    )
    notes_from_renter = serializers.CharField(
        required=False, allow_blank=True, max_length=1000
    )

    def validate(self, attrs):
        if attrs["end_date"] < attrs["start_date"]:
            raise serializers.ValidationError(
                {"end_date": "End date cannot be before start date."}
            )
        if (attrs["pickup_method"] == PickupMethod.DELIVERY
                and not attrs.get("delivery_address_id")):
            raise serializers.ValidationError(
                {"delivery_address_id": "A delivery address is required."}
            )
        return attrs


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=1000)


class PaymentProofSerializer(serializers.Serializer):
    amount_paid = optional_money_field(min_value=0)
    transaction_time = serializers.DateTimeField(
        required=False, allow_null=True
    )


class ProcessReturnSerializer(serializers.Serializer):
    actual_return_time = serializers.DateTimeField()
    return_condition_status = serializers.ChoiceField(
        choices=ReturnConditionStatus.choices
    )
    notes_from_owner_on_return = serializers.CharField(
        required=False, allow_blank=True
    )
    initiate_claim = serializers.BooleanField(required=False, default=False)


class InitiateReturnSerializer(serializers.Serializer):
    return_method = serializers.ChoiceField(choices=ReturnMethod.choices)
    carrier = serializers.CharField(required=False, allow_blank=True)
    tracking_number = serializers.CharField(required=False, allow_blank=True)
    return_datetime = serializers.DateTimeField(
        required=False, allow_null=True
    )
    location = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        method = attrs["return_method"]
        if method == ReturnMethod.SHIPPING and not attrs.get("carrier"):
            raise serializers.ValidationError(
                {"carrier": "A carrier is required for shipping returns."}
            )
        if method == ReturnMethod.IN_PERSON and not attrs.get("return_datetime"): # noqa
            raise serializers.ValidationError(
                {"return_datetime": "A return time is required."}
            )
        return attrs
