"""Booking lifecycle: the only code allowed to move a room between FREE and OCCUPIED.

Every operation runs inside one ``atomic_operation`` so that the room, the
active booking and the history archive always change together. The room row
is locked first and the booking second, in every operation, so concurrent
requests on the same room serialize on the room lock.
"""
import enum
import logging
import math
from contextlib import contextmanager
from datetime import datetime, time, timedelta

from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from .exceptions import (
    BookingNotFound,
    RoomHasActiveBooking,
    RoomNotFound,
    RoomUnavailable,
    TransientConflict,
)
from .models import Booking, BookingHistory, Room

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

# unique violation, serialization failure, deadlock, lock not available
CONTENTION_SQLSTATES = {"23505", "40001", "40P01", "55P03"}
CONTENTION_MESSAGES = ("unique constraint", "duplicate entry", "locked", "deadlock", "could not serialize")


def is_contention(exc):
    """Whether a database error came from a concurrent writer rather than a fault."""
    cause = exc.__cause__
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate:
        return sqlstate in CONTENTION_SQLSTATES
    message = str(exc).lower()
    return any(marker in message for marker in CONTENTION_MESSAGES)


@contextmanager
def atomic_operation(name):
    """Commit on success, roll back on any exception.

    Unique constraint races and lock timeouts are re-raised as the retryable
    ``TransientConflict``; any other database error propagates unchanged.
    """
    try:
        with transaction.atomic():
            yield
    except (IntegrityError, OperationalError) as exc:
        if not is_contention(exc):
            raise
        logger.warning("%s aborted by a concurrent update: %s", name, exc)
        raise TransientConflict() from exc


class ConflictResolution(enum.Enum):
    CHECKOUT = "checkout"
    DELETE = "delete"
    CANCEL = "cancel"

    @property
    def label(self):
        return {
            ConflictResolution.CHECKOUT: "Checkout current booking",
            ConflictResolution.DELETE: "Delete booking",
            ConflictResolution.CANCEL: "Cancel booking",
        }[self]

    def describe(self, booking):
        if self is ConflictResolution.CHECKOUT:
            return f"Checkout guest {booking.guest_name} and free up the room"
        if self is ConflictResolution.DELETE:
            return f"Delete the booking for guest {booking.guest_name}"
        return f"Cancel the booking for guest {booking.guest_name} without billing"

    def as_option(self, booking):
        return {"action": self.value, "label": self.label, "description": self.describe(booking)}

    @property
    def archives(self):
        return self is ConflictResolution.CHECKOUT


ROOM_OPTIONS = (ConflictResolution.CHECKOUT, ConflictResolution.DELETE)
BOOKING_OPTIONS = (ConflictResolution.CHECKOUT, ConflictResolution.CANCEL)


def conflict_payload(booking, options):
    return {
        "requiresAction": True,
        "bookingDetails": {
            "guestName": booking.guest_name,
            "bookingId": booking.pk,
            "checkInDate": booking.check_in_date,
            "nights": booking.nights,
        },
        "options": [option.as_option(booking) for option in options],
    }


def nights_stayed(check_in, check_out):
    """Whole nights billed for a stay, never less than one."""
    return max(1, math.ceil((check_out - check_in) / ONE_DAY))


def stay_status(actual_nights, planned_nights):
    if actual_nights < planned_nights:
        return BookingHistory.Status.EARLY_CHECKOUT
    if actual_nights > planned_nights:
        return BookingHistory.Status.EXTENDED_STAY
    return BookingHistory.Status.COMPLETED


class BookingLifecycle:
    def __init__(self, clock=timezone.now):
        self.clock = clock

    def start_of_day(self, day=None):
        if day is None:
            day = timezone.localtime(self.clock()).date()
        return timezone.make_aware(datetime.combine(day, time.min))

    def lock_room(self, room_id):
        try:
            return Room.objects.select_for_update().get(pk=room_id)
        except Room.DoesNotExist:
            raise RoomNotFound()

    def _lock_booking(self, booking_id):
        """Lock the booking's room, then the booking itself."""
        room_id = Booking.objects.filter(pk=booking_id).values_list("room_id", flat=True).first()
        if room_id is None:
            raise BookingNotFound()
        room = self.lock_room(room_id)
        try:
            booking = Booking.objects.select_for_update().get(pk=booking_id)
        except Booking.DoesNotExist:
            raise BookingNotFound()
        return room, booking

    def _blocking_booking(self, room):
        if room.current_booking_id is not None:
            return Booking.objects.filter(pk=room.current_booking_id).first()
        return Booking.objects.filter(room=room).first()

    def create(self, room_id, guest_name, nights, check_in_date=None):
        with atomic_operation("create booking"):
            room = self.lock_room(room_id)
            if room.is_occupied:
                blocking = self._blocking_booking(room)
                raise RoomUnavailable(
                    resolution=conflict_payload(blocking, BOOKING_OPTIONS) if blocking else None
                )

            booking = Booking(
                room=room,
                guest_name=guest_name.strip(),
                nights=nights,
                check_in_date=self.start_of_day(check_in_date),
                price_per_night=room.price_per_night,
            )
            booking.full_clean(validate_unique=False)
            booking.save()

            room.available = False
            room.current_booking = booking
            room.save(update_fields=["available", "current_booking", "updated_at"])

        logger.info("Room %s booked for %s (%d nights)", room.room_no, booking.guest_name, nights)
        return booking

    def update(self, booking_id, guest_name=None, nights=None):
        with atomic_operation("update booking"):
            _, booking = self._lock_booking(booking_id)
            if guest_name is not None:
                booking.guest_name = guest_name.strip()
            if nights is not None:
                booking.nights = nights
            booking.full_clean(validate_unique=False)
            booking.save(update_fields=["guest_name", "nights", "updated_at"])
        return booking

    def checkout(self, booking_id):
        with atomic_operation("checkout"):
            room, booking = self._lock_booking(booking_id)
            history = self._archive(room, booking)
        logger.info(
            "Checked out %s from room %s after %d nights (%s)",
            history.guest_name, history.room_no, history.actual_nights_stayed, history.status,
        )
        return history

    def delete(self, booking_id):
        with atomic_operation("delete booking"):
            room, booking = self._lock_booking(booking_id)
            self._release(room, booking)
        logger.info("Booking %s deleted, room %s released without billing", booking_id, room.room_no)

    def force_release(self, room, resolution):
        """Free an occupied room inside the caller's transaction.

        ``room`` must already be locked by the caller.
        """
        booking = self._blocking_booking(room)
        if booking is None:
            self._release(room, None)
            return None
        logger.info("Releasing room %s from booking %s (%s)", room.room_no, booking.pk, resolution.value)
        if resolution.archives:
            return self._archive(room, booking)
        self._release(room, booking)
        return None

    def release_for(self, room, resolution, options=ROOM_OPTIONS):
        """Force-release ``room`` if occupied, or refuse without a resolution."""
        if not room.is_occupied:
            return None
        if resolution is None:
            blocking = self._blocking_booking(room)
            if blocking is not None:
                raise RoomHasActiveBooking(resolution=conflict_payload(blocking, options))
        return self.force_release(room, resolution)

    def _archive(self, room, booking):
        check_out = self.clock()
        actual_nights = nights_stayed(booking.check_in_date, check_out)
        history = BookingHistory.objects.create(
            room_id=room.pk,
            guest_name=booking.guest_name,
            room_no=room.room_no,
            room_type=room.room_type,
            check_in_date=booking.check_in_date,
            check_out_date=check_out,
            nights=booking.nights,
            price_per_night=booking.price_per_night,
            total_amount=booking.planned_amount,
            actual_nights_stayed=actual_nights,
            actual_total_amount=actual_nights * booking.price_per_night,
            status=stay_status(actual_nights, booking.nights),
        )
        self._release(room, booking)
        return history

    def _release(self, room, booking):
        room.available = True
        room.current_booking = None
        room.save(update_fields=["available", "current_booking", "updated_at"])
        if booking is not None:
            booking.delete()
