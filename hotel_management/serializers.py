from decimal import Decimal

from django.utils import timezone
from rest_framework import serializers

from .analytics import REPORTS
from .lifecycle import ConflictResolution
from .models import Booking, BookingHistory, Room


class CredentialsInput(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(max_length=128, write_only=True)


class RoomSerializer(serializers.ModelSerializer):
    roomNo = serializers.IntegerField(source="room_no", min_value=1)
    type = serializers.ChoiceField(source="room_type", choices=Room.Type.choices)
    beds = serializers.IntegerField(min_value=1)
    pricePerNight = serializers.DecimalField(
        source="price_per_night", max_digits=10, decimal_places=2, min_value=Decimal("0")
    )
    description = serializers.CharField(max_length=200, required=False, allow_blank=True)
    available = serializers.BooleanField(read_only=True)
    currentBooking = serializers.PrimaryKeyRelatedField(source="current_booking", read_only=True)
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    updatedAt = serializers.DateTimeField(source="updated_at", read_only=True)

    class Meta:
        model = Room
        fields = [
            "id", "roomNo", "type", "beds", "pricePerNight", "description",
            "available", "currentBooking", "createdAt", "updatedAt",
        ]


class RoomFilterInput(serializers.Serializer):
    type = serializers.ChoiceField(choices=Room.Type.choices, required=False)
    available = serializers.BooleanField(required=False, allow_null=True, default=None)
    minBeds = serializers.IntegerField(min_value=1, required=False)
    maxPrice = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)


class RoomReleaseInput(serializers.Serializer):
    """How to resolve an occupied room when a change needs it free.

    ``resolution`` is the preferred form; ``forceUpdate``/``forceDelete`` with
    ``checkoutBooking`` is what older clients send.
    """
    available = serializers.BooleanField(required=False, allow_null=True, default=None)
    resolution = serializers.ChoiceField(
        choices=[choice.value for choice in ConflictResolution], required=False
    )
    forceUpdate = serializers.BooleanField(default=False)
    forceDelete = serializers.BooleanField(default=False)
    checkoutBooking = serializers.BooleanField(default=False)

    def get_resolution(self):
        data = self.validated_data
        if "resolution" in data:
            return ConflictResolution(data["resolution"])
        if data["forceUpdate"] or data["forceDelete"]:
            return ConflictResolution.CHECKOUT if data["checkoutBooking"] else ConflictResolution.DELETE
        return None


class BookedRoomSerializer(serializers.ModelSerializer):
    roomNo = serializers.IntegerField(source="room_no")
    type = serializers.CharField(source="room_type")
    pricePerNight = serializers.DecimalField(source="price_per_night", max_digits=10, decimal_places=2)

    class Meta:
        model = Room
        fields = ["id", "roomNo", "type", "beds", "pricePerNight"]


class BookingSerializer(serializers.ModelSerializer):
    roomId = serializers.IntegerField(source="room_id")
    room = BookedRoomSerializer(read_only=True)
    guestName = serializers.CharField(source="guest_name")
    checkInDate = serializers.DateTimeField(source="check_in_date")
    pricePerNight = serializers.DecimalField(source="price_per_night", max_digits=10, decimal_places=2)
    plannedAmount = serializers.DecimalField(source="planned_amount", max_digits=12, decimal_places=2)
    createdAt = serializers.DateTimeField(source="created_at")
    updatedAt = serializers.DateTimeField(source="updated_at")

    class Meta:
        model = Booking
        fields = [
            "id", "roomId", "room", "guestName", "nights", "checkInDate",
            "pricePerNight", "plannedAmount", "createdAt", "updatedAt",
        ]
        read_only_fields = fields


class BookingInput(serializers.Serializer):
    roomId = serializers.IntegerField(min_value=1)
    guestName = serializers.CharField(max_length=50)
    nights = serializers.IntegerField(min_value=1)
    checkInDate = serializers.DateField(required=False)

    def validate_checkInDate(self, value):
        if value < timezone.localdate():
            raise serializers.ValidationError("Check-in date cannot be in the past")
        return value


class BookingUpdateInput(serializers.Serializer):
    guestName = serializers.CharField(max_length=50, required=False)
    nights = serializers.IntegerField(min_value=1, required=False)

    def validate(self, data):
        if not data:
            raise serializers.ValidationError("At least one field (guestName or nights) must be provided")
        return data


class BookingHistorySerializer(serializers.ModelSerializer):
    roomId = serializers.IntegerField(source="room_id")
    guestName = serializers.CharField(source="guest_name")
    roomNo = serializers.IntegerField(source="room_no")
    roomType = serializers.CharField(source="room_type")
    checkInDate = serializers.DateTimeField(source="check_in_date")
    checkOutDate = serializers.DateTimeField(source="check_out_date")
    pricePerNight = serializers.DecimalField(source="price_per_night", max_digits=10, decimal_places=2)
    totalAmount = serializers.DecimalField(source="total_amount", max_digits=12, decimal_places=2)
    actualNightsStayed = serializers.IntegerField(source="actual_nights_stayed")
    actualTotalAmount = serializers.DecimalField(source="actual_total_amount", max_digits=12, decimal_places=2)
    createdAt = serializers.DateTimeField(source="created_at")

    class Meta:
        model = BookingHistory
        fields = [
            "id", "roomId", "guestName", "roomNo", "roomType", "checkInDate",
            "checkOutDate", "nights", "pricePerNight", "totalAmount",
            "actualNightsStayed", "actualTotalAmount", "status", "createdAt",
        ]
        read_only_fields = fields


class CheckoutSummarySerializer(serializers.ModelSerializer):
    """Billing summary handed back by a checkout."""
    historyId = serializers.IntegerField(source="id")
    guestName = serializers.CharField(source="guest_name")
    roomNo = serializers.IntegerField(source="room_no")
    plannedNights = serializers.IntegerField(source="nights")
    plannedAmount = serializers.DecimalField(source="total_amount", max_digits=12, decimal_places=2)
    actualNights = serializers.IntegerField(source="actual_nights_stayed")
    actualAmount = serializers.DecimalField(source="actual_total_amount", max_digits=12, decimal_places=2)
    pricePerNight = serializers.DecimalField(source="price_per_night", max_digits=10, decimal_places=2)
    checkInDate = serializers.DateTimeField(source="check_in_date")
    checkOutDate = serializers.DateTimeField(source="check_out_date")

    class Meta:
        model = BookingHistory
        fields = [
            "historyId", "guestName", "roomNo", "plannedNights", "plannedAmount",
            "actualNights", "actualAmount", "pricePerNight", "status",
            "checkInDate", "checkOutDate",
        ]
        read_only_fields = fields


class HistoryFilterInput(serializers.Serializer):
    reportType = serializers.ChoiceField(choices=sorted(REPORTS), required=False)
    roomType = serializers.ChoiceField(choices=Room.Type.choices, required=False)
    roomNo = serializers.IntegerField(min_value=1, required=False)
    status = serializers.ChoiceField(choices=BookingHistory.Status.choices, required=False)
    startDate = serializers.DateField(required=False)
    endDate = serializers.DateField(required=False)
    minNights = serializers.IntegerField(min_value=1, required=False)
    maxNights = serializers.IntegerField(min_value=1, required=False)
    guestName = serializers.CharField(required=False)

    def validate(self, data):
        if data.get("startDate") and data.get("endDate") and data["endDate"] < data["startDate"]:
            raise serializers.ValidationError("endDate must not be before startDate")
        return data

    def history_filters(self):
        data = self.validated_data
        return {
            "room_type": data.get("roomType"),
            "room_no": data.get("roomNo"),
            "status": data.get("status"),
            "start_date": data.get("startDate"),
            "end_date": data.get("endDate"),
            "min_nights": data.get("minNights"),
            "max_nights": data.get("maxNights"),
            "guest_name": data.get("guestName"),
        }
