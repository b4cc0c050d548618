from decimal import Decimal

from django.db import models
from django.core.validators import MinValueValidator


class Room(models.Model):
    class Type(models.TextChoices):
        SINGLE = "single"
        DOUBLE = "double"
        SUITE = "suite"

    room_no = models.PositiveIntegerField(unique=True, validators=[MinValueValidator(1)])
    room_type = models.CharField(max_length=10, choices=Type.choices)
    beds = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price_per_night = models.DecimalField(
        max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal("0"))]
    )
    description = models.CharField(max_length=200, blank=True)
    available = models.BooleanField(default=True)
    current_booking = models.OneToOneField(
        "Booking", null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["room_no"]

    def __str__(self):
        return f"Room {self.room_no} ({self.room_type})"

    @property
    def is_occupied(self):
        return not self.available or self.current_booking_id is not None


class Booking(models.Model):
    # one active booking per room; the unique constraint backs up the row lock
    room = models.OneToOneField(Room, on_delete=models.PROTECT, related_name="active_booking")
    guest_name = models.CharField(max_length=50)
    nights = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    check_in_date = models.DateTimeField()
    price_per_night = models.DecimalField(
        max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal("0"))]
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Booking {self.pk} - {self.guest_name} ({self.nights} nights)"

    @property
    def planned_amount(self):
        return self.nights * self.price_per_night


class BookingHistory(models.Model):
    class Status(models.TextChoices):
        COMPLETED = "completed"
        EARLY_CHECKOUT = "early_checkout"
        EXTENDED_STAY = "extended_stay"

    # history outlives the room it points at
    room = models.ForeignKey(
        Room, on_delete=models.DO_NOTHING, db_constraint=False, related_name="history"
    )
    guest_name = models.CharField(max_length=50)
    room_no = models.PositiveIntegerField()
    room_type = models.CharField(max_length=10, choices=Room.Type.choices)
    check_in_date = models.DateTimeField()
    check_out_date = models.DateTimeField()
    nights = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price_per_night = models.DecimalField(max_digits=10, decimal_places=2)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    actual_nights_stayed = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    actual_total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.COMPLETED)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-check_out_date"]
        verbose_name_plural = "booking history"

    def __str__(self):
        return f"{self.guest_name} in room {self.room_no} ({self.status})"
