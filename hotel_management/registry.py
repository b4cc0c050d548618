import logging

from django.db.models import Count, DecimalField, ExpressionWrapper, F, Sum

from .exceptions import BookingNotFound, InvalidInput, RoomNotFound, RoomNumberTaken
from .lifecycle import BookingLifecycle, atomic_operation
from .models import Booking, Room

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Room inventory. Occupancy changes are delegated to the booking lifecycle."""

    def __init__(self, lifecycle=None):
        self.lifecycle = lifecycle or BookingLifecycle()

    def search(self, room_type=None, available=None, min_beds=None, max_price=None):
        rooms = Room.objects.all()
        if room_type:
            rooms = rooms.filter(room_type=room_type)
        if available is not None:
            rooms = rooms.filter(available=available)
        if min_beds is not None:
            rooms = rooms.filter(beds__gte=min_beds)
        if max_price is not None:
            rooms = rooms.filter(price_per_night__lte=max_price)
        return rooms.order_by("room_no")

    def get(self, room_id):
        room = Room.objects.filter(pk=room_id).first()
        if room is None:
            raise RoomNotFound()
        return room

    def create(self, fields):
        with atomic_operation("create room"):
            if Room.objects.filter(room_no=fields["room_no"]).exists():
                raise RoomNumberTaken()
            room = Room.objects.create(**fields)
        logger.info("Room %s created", room.room_no)
        return room

    def update(self, room_id, fields, available=None, resolution=None):
        """Apply ``fields`` to a room.

        ``available=True`` on an occupied room releases it first, which needs a
        ``resolution`` when a booking is still attached.
        """
        with atomic_operation("update room"):
            room = self.lifecycle.lock_room(room_id)

            room_no = fields.get("room_no")
            if room_no is not None and room_no != room.room_no:
                if Room.objects.filter(room_no=room_no).exclude(pk=room.pk).exists():
                    raise RoomNumberTaken()

            if available is False and not room.is_occupied:
                raise InvalidInput("Room availability follows its bookings and cannot be cleared directly")
            if available:
                self.lifecycle.release_for(room, resolution)

            for attr, value in fields.items():
                setattr(room, attr, value)
            room.save()
        logger.info("Room %s updated", room.room_no)
        return room

    def delete(self, room_id, resolution=None):
        with atomic_operation("delete room"):
            room = self.lifecycle.lock_room(room_id)
            self.lifecycle.release_for(room, resolution)
            room_no = room.room_no
            room.delete()
        logger.info("Room %s deleted", room_no)


class BookingLedger:
    """Read side of the active bookings."""

    def all(self):
        return Booking.objects.select_related("room").order_by("-created_at", "-id")

    def get(self, booking_id):
        booking = self.all().filter(pk=booking_id).first()
        if booking is None:
            raise BookingNotFound()
        return booking

    def summary(self):
        revenue = ExpressionWrapper(
            F("nights") * F("price_per_night"),
            output_field=DecimalField(max_digits=12, decimal_places=2),
        )
        rows = (
            Booking.objects.values(
                roomId=F("room_id"), roomNo=F("room__room_no"), type=F("room__room_type")
            )
            .annotate(
                totalNightsBooked=Sum("nights"),
                totalBookings=Count("id"),
                totalRevenue=Sum(revenue),
            )
            .order_by("roomNo")
        )
        return list(rows)
