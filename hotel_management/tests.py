from django.test import TestCase, TransactionTestCase
from django.db import IntegrityError, OperationalError, connection
from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.utils import timezone
from rest_framework.test import APITestCase
from rest_framework import status
from datetime import datetime, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock
from concurrent.futures import ThreadPoolExecutor, as_completed

from .authentication import TokenService
from .exceptions import (
    BookingNotFound,
    RoomUnavailable,
    TransientConflict,
    envelope_exception_handler,
    flatten_messages,
)
from .lifecycle import BookingLifecycle, is_contention, nights_stayed, stay_status
from .models import Room, Booking, BookingHistory


def make_room(room_no=101, room_type=Room.Type.SINGLE, beds=1, price="100.00"):
    return Room.objects.create(
        room_no=room_no,
        room_type=room_type,
        beds=beds,
        price_per_night=Decimal(price),
        description=f"Test room {room_no}"
    )


def make_admin(username="admin"):
    return get_user_model().objects.create_user(username=username, password="secret-pass")


class AdminAPITestCase(APITestCase):
    """API tests running as an authenticated admin"""

    def setUp(self):
        self.admin = make_admin()
        self.client.force_authenticate(user=self.admin)


class NightsStayedTestCase(TestCase):
    """Billing arithmetic of a checkout"""

    def setUp(self):
        self.check_in = timezone.make_aware(datetime(2026, 3, 10))

    def test_same_instant_counts_one_night(self):
        self.assertEqual(nights_stayed(self.check_in, self.check_in), 1)

    def test_partial_day_rounds_up(self):
        self.assertEqual(nights_stayed(self.check_in, self.check_in + timedelta(hours=30)), 2)

    def test_checkout_before_check_in_still_bills_one_night(self):
        self.assertEqual(nights_stayed(self.check_in, self.check_in - timedelta(hours=5)), 1)

    def test_stay_status(self):
        self.assertEqual(stay_status(1, 3), BookingHistory.Status.EARLY_CHECKOUT)
        self.assertEqual(stay_status(3, 3), BookingHistory.Status.COMPLETED)
        self.assertEqual(stay_status(5, 3), BookingHistory.Status.EXTENDED_STAY)


class RoomRegistryTestCase(AdminAPITestCase):
    """Room inventory endpoints"""

    def test_create_room(self):
        response = self.client.post('/api/rooms/', {
            'roomNo': 101,
            'type': 'single',
            'beds': 1,
            'pricePerNight': 100
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['data']['roomNo'], 101)
        self.assertTrue(response.data['data']['available'])
        self.assertIsNone(response.data['data']['currentBooking'])

    def test_duplicate_room_number_conflicts(self):
        make_room(101)

        response = self.client.post('/api/rooms/', {
            'roomNo': 101, 'type': 'double', 'beds': 2, 'pricePerNight': 150
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(response.data['success'])
        self.assertEqual(response.data['message'], 'Room number already exists')
        self.assertEqual(Room.objects.count(), 1)

    def test_missing_required_fields_are_rejected(self):
        response = self.client.post('/api/rooms/', {'roomNo': 102}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('type: This field is required.', response.data['error'])
        self.assertIn('beds: This field is required.', response.data['error'])
        self.assertIn('pricePerNight: This field is required.', response.data['error'])
        self.assertEqual(Room.objects.count(), 0)

    def test_invalid_room_type_is_rejected(self):
        response = self.client.post('/api/rooms/', {
            'roomNo': 103, 'type': 'penthouse', 'beds': 1, 'pricePerNight': 100
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_list_filters_and_pagination(self):
        make_room(101, Room.Type.SINGLE, 1, "100.00")
        make_room(201, Room.Type.DOUBLE, 2, "150.00")
        make_room(301, Room.Type.SUITE, 4, "300.00")

        response = self.client.get('/api/rooms/', {'type': 'double'})
        self.assertEqual([room['roomNo'] for room in response.data['data']], [201])

        response = self.client.get('/api/rooms/', {'maxPrice': '150'})
        self.assertEqual([room['roomNo'] for room in response.data['data']], [101, 201])

        response = self.client.get('/api/rooms/', {'minBeds': 2})
        self.assertEqual([room['roomNo'] for room in response.data['data']], [201, 301])

        response = self.client.get('/api/rooms/', {'limit': 2})
        self.assertEqual(response.data['pagination'], {'page': 1, 'limit': 2, 'total': 3, 'pages': 2})

    def test_list_filters_by_availability(self):
        room = make_room(101)
        make_room(102)
        BookingLifecycle().create(room.pk, 'Alice', 2)

        response = self.client.get('/api/rooms/', {'available': 'false'})
        self.assertEqual([r['roomNo'] for r in response.data['data']], [101])

        response = self.client.get('/api/rooms/')
        self.assertEqual(response.data['pagination']['total'], 2)

    def test_retrieve_with_bad_and_unknown_ids(self):
        response = self.client.get('/api/rooms/abc/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['message'], 'Invalid room ID format')

        response = self.client.get('/api/rooms/999/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['message'], 'Room not found')

    def test_update_room_number_collision(self):
        make_room(101)
        other = make_room(102)

        response = self.client.put(f'/api/rooms/{other.id}/', {'roomNo': 101}, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        other.refresh_from_db()
        self.assertEqual(other.room_no, 102)

    def test_update_room_details(self):
        room = make_room(101)

        response = self.client.put(f'/api/rooms/{room.id}/', {
            'pricePerNight': 120, 'description': 'Renovated'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        room.refresh_from_db()
        self.assertEqual(room.price_per_night, Decimal('120.00'))
        self.assertEqual(room.description, 'Renovated')

    def test_free_room_cannot_be_marked_unavailable(self):
        room = make_room(101)

        response = self.client.patch(f'/api/rooms/{room.id}/', {'available': False}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        room.refresh_from_db()
        self.assertTrue(room.available)

    def test_delete_free_room(self):
        room = make_room(101)

        response = self.client.delete(f'/api/rooms/{room.id}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Room.objects.exists())


class BookingCreationTestCase(AdminAPITestCase):
    """Booking a room through the API"""

    def setUp(self):
        super().setUp()
        self.room = make_room(101, Room.Type.SINGLE, 1, "100.00")

    def book(self, **overrides):
        payload = {'roomId': self.room.id, 'guestName': 'Alice', 'nights': 2}
        payload.update(overrides)
        return self.client.post('/api/bookings/', payload, format='json')

    def test_booking_occupies_the_room(self):
        response = self.book()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        booking = Booking.objects.get()
        self.room.refresh_from_db()
        self.assertFalse(self.room.available)
        self.assertEqual(self.room.current_booking_id, booking.id)
        self.assertEqual(response.data['data']['room']['roomNo'], 101)
        self.assertEqual(response.data['data']['pricePerNight'], Decimal('100'))
        self.assertEqual(booking.check_in_date, BookingLifecycle().start_of_day())

    def test_second_booking_conflicts_with_resolution_options(self):
        first = self.book().data['data']

        response = self.book(guestName='Bob')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['message'], 'Room is not available')
        conflict = response.data['data']
        self.assertTrue(conflict['requiresAction'])
        self.assertEqual(conflict['bookingDetails']['bookingId'], first['id'])
        self.assertEqual(conflict['bookingDetails']['guestName'], 'Alice')
        self.assertEqual([option['action'] for option in conflict['options']], ['checkout', 'cancel'])
        self.assertEqual(Booking.objects.count(), 1)

    def test_unknown_room(self):
        response = self.book(roomId=999)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['message'], 'Room not found')

    def test_invalid_payloads_leave_room_free(self):
        invalid_payloads = [
            {'nights': 0},
            {'guestName': '   '},
            {'guestName': 'x' * 51},
            {'roomId': None},
            {'checkInDate': (timezone.localdate() - timedelta(days=1)).isoformat()},
        ]

        for overrides in invalid_payloads:
            with self.subTest(overrides=overrides):
                response = self.book(**overrides)
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertFalse(response.data['success'])

        self.room.refresh_from_db()
        self.assertTrue(self.room.available)
        self.assertFalse(Booking.objects.exists())

    def test_guest_name_is_trimmed(self):
        self.book(guestName='  Bob  ')

        self.assertEqual(Booking.objects.get().guest_name, 'Bob')

    def test_future_check_in_date(self):
        check_in = timezone.localdate() + timedelta(days=3)

        response = self.book(checkInDate=check_in.isoformat())

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        booking = Booking.objects.get()
        self.assertEqual(timezone.localtime(booking.check_in_date).date(), check_in)

    def test_list_and_retrieve_bookings(self):
        other = make_room(102)
        self.book()
        self.book(roomId=other.id, guestName='Bob')

        response = self.client.get('/api/bookings/')
        self.assertEqual(response.data['pagination']['total'], 2)
        self.assertEqual(response.data['data'][0]['guestName'], 'Bob')

        booking = Booking.objects.get(guest_name='Alice')
        response = self.client.get(f'/api/bookings/{booking.id}/')
        self.assertEqual(response.data['data']['room']['roomNo'], 101)

    def test_summary_groups_active_bookings_by_room(self):
        other = make_room(201, Room.Type.DOUBLE, 2, "150.00")
        self.book(nights=2)
        self.book(roomId=other.id, guestName='Bob', nights=3)

        response = self.client.get('/api/bookings/summary/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        rows = response.data['data']
        self.assertEqual([row['roomNo'] for row in rows], [101, 201])
        self.assertEqual(rows[0]['totalRevenue'], Decimal('200'))
        self.assertEqual(rows[1]['totalNightsBooked'], 3)
        self.assertEqual(rows[1]['totalRevenue'], Decimal('450'))
        self.assertEqual(rows[1]['type'], 'double')


class CheckoutTestCase(TestCase):
    """Checkout billing with a controlled clock"""

    def setUp(self):
        self.room = make_room(101, Room.Type.SINGLE, 1, "100.00")
        self.now = timezone.make_aware(datetime(2026, 3, 10, 9, 30))
        self.lifecycle = BookingLifecycle(clock=lambda: self.now)
        self.booking = self.lifecycle.create(self.room.id, 'Alice', 3)

    def test_check_in_is_truncated_to_the_day(self):
        self.assertEqual(self.booking.check_in_date, timezone.make_aware(datetime(2026, 3, 10)))

    def test_same_day_checkout_is_early(self):
        self.now = timezone.make_aware(datetime(2026, 3, 10, 18, 0))

        history = self.lifecycle.checkout(self.booking.id)

        self.assertEqual(history.actual_nights_stayed, 1)
        self.assertEqual(history.status, BookingHistory.Status.EARLY_CHECKOUT)
        self.assertEqual(history.actual_total_amount, Decimal('100'))
        self.assertEqual(history.total_amount, Decimal('300'))

    def test_checkout_at_check_in_instant_bills_one_night(self):
        self.now = self.booking.check_in_date

        history = self.lifecycle.checkout(self.booking.id)

        self.assertEqual(history.actual_nights_stayed, 1)

    def test_late_checkout_is_extended_stay(self):
        self.now = self.booking.check_in_date + timedelta(days=5)

        history = self.lifecycle.checkout(self.booking.id)

        self.assertEqual(history.actual_nights_stayed, 5)
        self.assertEqual(history.status, BookingHistory.Status.EXTENDED_STAY)
        self.assertEqual(history.actual_total_amount, Decimal('500'))

    def test_planned_checkout_is_completed(self):
        self.now = self.booking.check_in_date + timedelta(days=3)

        history = self.lifecycle.checkout(self.booking.id)

        self.assertEqual(history.status, BookingHistory.Status.COMPLETED)
        self.assertEqual(history.actual_total_amount, history.total_amount)

    def test_planned_amount_ignores_later_price_changes(self):
        self.room.refresh_from_db()
        self.room.price_per_night = Decimal('250.00')
        self.room.save()
        self.now = self.booking.check_in_date + timedelta(days=3)

        history = self.lifecycle.checkout(self.booking.id)

        self.assertEqual(history.total_amount, Decimal('300'))
        self.assertEqual(history.price_per_night, Decimal('100'))

    def test_checkout_moves_booking_into_history(self):
        history = self.lifecycle.checkout(self.booking.id)

        self.assertEqual(BookingHistory.objects.count(), 1)
        self.assertFalse(Booking.objects.exists())
        self.room.refresh_from_db()
        self.assertTrue(self.room.available)
        self.assertIsNone(self.room.current_booking_id)
        self.assertEqual(history.room_id, self.room.id)
        self.assertEqual(history.room_no, 101)
        self.assertEqual(history.room_type, Room.Type.SINGLE)
        self.assertEqual(history.guest_name, 'Alice')

    def test_checkout_twice_is_not_found(self):
        self.lifecycle.checkout(self.booking.id)

        with self.assertRaises(BookingNotFound):
            self.lifecycle.checkout(self.booking.id)
        self.assertEqual(BookingHistory.objects.count(), 1)

    def test_room_can_be_booked_again_after_checkout(self):
        self.lifecycle.checkout(self.booking.id)

        booking = self.lifecycle.create(self.room.id, 'Bob', 1)

        self.room.refresh_from_db()
        self.assertEqual(self.room.current_booking_id, booking.id)

    def test_occupied_room_refuses_new_booking(self):
        with self.assertRaises(RoomUnavailable) as raised:
            self.lifecycle.create(self.room.id, 'Bob', 1)

        self.assertEqual(raised.exception.resolution['bookingDetails']['bookingId'], self.booking.id)


class CheckoutAPITestCase(AdminAPITestCase):
    """Checkout endpoint"""

    def setUp(self):
        super().setUp()
        self.room = make_room(101, Room.Type.SINGLE, 1, "100.00")
        self.booking = BookingLifecycle().create(self.room.id, 'Alice', 3)

    def test_checkout_returns_billing_summary(self):
        response = self.client.post(f'/api/bookings/{self.booking.id}/checkout/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        summary = response.data['data']
        self.assertEqual(summary['plannedNights'], 3)
        self.assertEqual(summary['plannedAmount'], Decimal('300'))
        self.assertEqual(summary['actualNights'], 1)
        self.assertEqual(summary['actualAmount'], Decimal('100'))
        self.assertEqual(summary['status'], 'early_checkout')
        self.assertEqual(summary['roomNo'], 101)
        self.assertEqual(summary['guestName'], 'Alice')
        self.room.refresh_from_db()
        self.assertTrue(self.room.available)

    def test_checkout_of_unknown_booking(self):
        self.client.post(f'/api/bookings/{self.booking.id}/checkout/')

        response = self.client.post(f'/api/bookings/{self.booking.id}/checkout/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(BookingHistory.objects.count(), 1)


class BookingUpdateTestCase(AdminAPITestCase):
    """Booking changes are limited to guest name and nights"""

    def setUp(self):
        super().setUp()
        self.room = make_room(101)
        self.booking = BookingLifecycle().create(self.room.id, 'Alice', 2)

    def test_update_guest_name_and_nights(self):
        response = self.client.put(f'/api/bookings/{self.booking.id}/', {
            'guestName': 'Carol', 'nights': 4
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['guestName'], 'Carol')
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.nights, 4)

    def test_update_needs_a_field(self):
        response = self.client.patch(f'/api/bookings/{self.booking.id}/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('At least one field', response.data['message'])

    def test_update_rejects_zero_nights(self):
        response = self.client.patch(f'/api/bookings/{self.booking.id}/', {'nights': 0}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.nights, 2)

    def test_update_unknown_booking(self):
        response = self.client.patch('/api/bookings/999/', {'nights': 3}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class BookingDeleteTestCase(AdminAPITestCase):
    """Deleting a booking frees the room without billing"""

    def setUp(self):
        super().setUp()
        self.room = make_room(101)
        self.booking = BookingLifecycle().create(self.room.id, 'Alice', 2)

    def test_delete_releases_room_without_history(self):
        response = self.client.delete(f'/api/bookings/{self.booking.id}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.room.refresh_from_db()
        self.assertTrue(self.room.available)
        self.assertIsNone(self.room.current_booking_id)
        self.assertFalse(BookingHistory.objects.exists())

    def test_deleting_twice_is_not_found(self):
        self.client.delete(f'/api/bookings/{self.booking.id}/')

        response = self.client.delete(f'/api/bookings/{self.booking.id}/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['message'], 'Booking not found')

    def test_bad_booking_id(self):
        response = self.client.delete('/api/bookings/abc/')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['message'], 'Invalid booking ID format')


class RoomReleaseTestCase(AdminAPITestCase):
    """Room changes that need the room's booking out of the way"""

    def setUp(self):
        super().setUp()
        self.room = make_room(101)
        self.booking = BookingLifecycle().create(self.room.id, 'Alice', 2)
        self.url = f'/api/rooms/{self.room.id}/'

    def test_making_occupied_room_available_requires_action(self):
        response = self.client.put(self.url, {'available': True}, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['message'], 'Room has active bookings')
        conflict = response.data['data']
        self.assertTrue(conflict['requiresAction'])
        self.assertEqual(conflict['bookingDetails']['bookingId'], self.booking.id)
        self.assertEqual([option['action'] for option in conflict['options']], ['checkout', 'delete'])
        self.assertTrue(Booking.objects.filter(pk=self.booking.id).exists())

    def test_release_by_checkout(self):
        response = self.client.put(self.url, {'available': True, 'resolution': 'checkout'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['data']['available'])
        self.assertEqual(BookingHistory.objects.count(), 1)
        self.assertFalse(Booking.objects.exists())

    def test_release_by_legacy_force_flags(self):
        response = self.client.put(self.url, {
            'available': True, 'forceUpdate': True, 'checkoutBooking': False
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(BookingHistory.objects.exists())
        self.assertFalse(Booking.objects.exists())

    def test_updating_other_fields_keeps_room_occupied(self):
        response = self.client.put(self.url, {'pricePerNight': 150}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.room.refresh_from_db()
        self.assertFalse(self.room.available)
        self.assertEqual(self.room.current_booking_id, self.booking.id)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.price_per_night, Decimal('100'))

    def test_deleting_occupied_room_requires_action(self):
        response = self.client.delete(self.url)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual([option['action'] for option in response.data['data']['options']], ['checkout', 'delete'])
        self.assertTrue(Room.objects.filter(pk=self.room.id).exists())

    def test_delete_room_after_checkout_keeps_history(self):
        response = self.client.delete(self.url, {'resolution': 'checkout'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Room.objects.exists())
        history = BookingHistory.objects.get()
        self.assertEqual(history.room_id, self.room.id)
        self.assertEqual(history.room_no, 101)

    def test_release_by_delete_resolution(self):
        response = self.client.patch(self.url, {'available': True, 'resolution': 'delete'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['data']['available'])
        self.assertIsNone(response.data['data']['currentBooking'])
        self.assertFalse(Booking.objects.exists())
        self.assertFalse(BookingHistory.objects.exists())

    def test_release_by_cancel_resolution(self):
        response = self.client.put(self.url, {'available': True, 'resolution': 'cancel'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.room.refresh_from_db()
        self.assertTrue(self.room.available)
        self.assertFalse(Booking.objects.exists())
        self.assertFalse(BookingHistory.objects.exists())

    def test_marking_occupied_room_unavailable_changes_nothing(self):
        response = self.client.patch(self.url, {'available': False}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['data']['available'])
        self.room.refresh_from_db()
        self.assertEqual(self.room.current_booking_id, self.booking.id)
        self.assertTrue(Booking.objects.filter(pk=self.booking.id).exists())

    def test_delete_room_with_delete_resolution(self):
        response = self.client.delete(self.url, {'resolution': 'delete'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Room.objects.exists())
        self.assertFalse(Booking.objects.exists())
        self.assertFalse(BookingHistory.objects.exists())

    def test_delete_room_with_resolution_in_query(self):
        response = self.client.delete(f'{self.url}?resolution=cancel')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Room.objects.exists())
        self.assertFalse(BookingHistory.objects.exists())

    def test_post_on_room_deletes_it(self):

        response = self.client.post(self.url, {'forceDelete': True}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Room.objects.exists())
        self.assertFalse(Booking.objects.exists())
        self.assertFalse(BookingHistory.objects.exists())


class AtomicityTestCase(TestCase):
    """A failure midway through an operation leaves nothing behind"""

    def setUp(self):
        self.room = make_room(101)
        self.lifecycle = BookingLifecycle()

    def test_failed_room_update_rolls_back_booking(self):
        with mock.patch.object(Room, 'save', side_effect=RuntimeError('write failed')):
            with self.assertRaises(RuntimeError):
                self.lifecycle.create(self.room.id, 'Alice', 2)

        self.assertFalse(Booking.objects.exists())
        self.room.refresh_from_db()
        self.assertTrue(self.room.available)

    def test_failed_booking_removal_rolls_back_checkout(self):
        booking = self.lifecycle.create(self.room.id, 'Alice', 2)

        with mock.patch.object(Booking, 'delete', side_effect=RuntimeError('write failed')):
            with self.assertRaises(RuntimeError):
                self.lifecycle.checkout(booking.id)

        self.assertFalse(BookingHistory.objects.exists())
        self.assertTrue(Booking.objects.filter(pk=booking.id).exists())
        self.room.refresh_from_db()
        self.assertFalse(self.room.available)
        self.assertEqual(self.room.current_booking_id, booking.id)


class TransientConflictTestCase(AdminAPITestCase):
    """Database contention is retryable, other database faults are not"""

    def setUp(self):
        super().setUp()
        self.room = make_room(101)

    def book(self):
        return self.client.post('/api/bookings/', {
            'roomId': self.room.id, 'guestName': 'Alice', 'nights': 2
        }, format='json')

    def test_unique_race_on_booking_is_retryable(self):
        race = IntegrityError('UNIQUE constraint failed: hotel_management_booking.room_id')

        with mock.patch.object(Booking, 'save', side_effect=race):
            with self.assertLogs('hotel_management.lifecycle', level='WARNING'):
                response = self.book()

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertFalse(response.data['success'])
        self.assertTrue(response.data['retryable'])
        self.room.refresh_from_db()
        self.assertTrue(self.room.available)
        self.assertFalse(Booking.objects.exists())

    def test_lock_timeout_on_room_update_is_retryable(self):
        with mock.patch.object(Room, 'save', side_effect=OperationalError('database is locked')):
            with self.assertLogs('hotel_management.lifecycle', level='WARNING'):
                response = self.client.patch(f'/api/rooms/{self.room.id}/', {'beds': 2}, format='json')

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertTrue(response.data['retryable'])
        self.room.refresh_from_db()
        self.assertEqual(self.room.beds, 1)

    def test_other_database_errors_are_server_errors(self):
        faults = [
            IntegrityError('NOT NULL constraint failed: hotel_management_booking.guest_name'),
            OperationalError('no such table: hotel_management_booking'),
        ]

        for fault in faults:
            with self.subTest(fault=str(fault)):
                with mock.patch.object(Booking, 'save', side_effect=fault):
                    with self.assertLogs('hotel_management.exceptions', level='ERROR'):
                        response = self.book()

                self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
                self.assertEqual(response.data, {'success': False, 'message': 'Internal server error'})
                self.room.refresh_from_db()
                self.assertTrue(self.room.available)

    def test_contention_by_sqlstate(self):
        for sqlstate, expected in [('23505', True), ('40P01', True), ('55P03', True), ('23502', False)]:
            with self.subTest(sqlstate=sqlstate):
                cause = Exception('driver error')
                cause.sqlstate = sqlstate
                error = IntegrityError('constraint violated')
                error.__cause__ = cause
                self.assertEqual(is_contention(error), expected)


class RaceConditionTestCase(TransactionTestCase):
    """Concurrent bookings of one room"""

    def setUp(self):
        self.room = make_room(101)

    def test_concurrent_booking_attempts_leave_one_booking(self):

        def create_booking(guest_name):
            try:
                BookingLifecycle().create(self.room.id, guest_name, 2)
                return True
            except (RoomUnavailable, TransientConflict):
                return False
            finally:
                connection.close()

        num_attempts = 5
        with ThreadPoolExecutor(max_workers=num_attempts) as executor:
            futures = [executor.submit(create_booking, f'Guest {i}') for i in range(num_attempts)]
            results = [future.result() for future in as_completed(futures)]

        bookings = Booking.objects.filter(room=self.room).count()
        self.assertLessEqual(results.count(True), 1)
        self.assertEqual(bookings, results.count(True))
        self.room.refresh_from_db()
        self.assertEqual(self.room.available, bookings == 0)


class BookingHistoryAnalyticsTestCase(AdminAPITestCase):
    """History reports"""

    url = '/api/bookings/history/'

    def archive(self, guest_name, room_no, room_type, actual_nights, price, check_out, status, nights=2):
        price = Decimal(price)
        check_out = timezone.make_aware(check_out)
        return BookingHistory.objects.create(
            room_id=room_no,
            guest_name=guest_name,
            room_no=room_no,
            room_type=room_type,
            check_in_date=check_out - timedelta(days=actual_nights),
            check_out_date=check_out,
            nights=nights,
            price_per_night=price,
            total_amount=nights * price,
            actual_nights_stayed=actual_nights,
            actual_total_amount=actual_nights * price,
            status=status,
        )

    def populate(self):
        self.archive('Alice', 101, 'single', 2, '100', datetime(2026, 1, 15, 10), 'completed')
        self.archive('Bob', 201, 'double', 1, '150', datetime(2026, 1, 20, 12), 'early_checkout', nights=3)
        self.archive('Alice', 301, 'suite', 4, '300', datetime(2026, 2, 3, 9), 'extended_stay')
        self.archive('Carol', 101, 'single', 1, '100', datetime(2026, 2, 10, 11), 'completed', nights=1)

    def report(self, report_type, **params):
        response = self.client.get(self.url, {'reportType': report_type, **params})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['reportType'], report_type)
        return response.data['data']

    def test_empty_archive(self):
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data'], [])
        self.assertEqual(response.data['analytics'], {
            'totalRevenue': 0, 'totalBookings': 0, 'averageStayDuration': 0
        })
        self.assertEqual(response.data['pagination']['total'], 0)

    def test_page_past_the_end_is_clamped(self):
        response = self.client.get(self.url, {'page': 2})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data'], [])
        self.assertEqual(response.data['pagination']['page'], 1)

        self.populate()
        response = self.client.get(self.url, {'page': 9, 'limit': 3})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['pagination'], {'page': 2, 'limit': 3, 'total': 4, 'pages': 2})
        self.assertEqual([row['guestName'] for row in response.data['data']], ['Alice'])

    def test_every_report_handles_an_empty_archive(self):
        for report_type in ['dashboard-stats', 'total-revenue', 'revenue-by-room-type',
                            'revenue-by-room-no', 'revenue-by-month', 'average-stay-duration',
                            'guest-repeat-count', 'stay-comparison']:
            with self.subTest(report_type=report_type):
                self.report(report_type)

        stats = self.report('dashboard-stats')
        self.assertEqual(stats['totalRevenue'], 0)
        self.assertEqual(stats['statusBreakdown'], [])

    def test_history_page_with_analytics(self):
        self.populate()

        response = self.client.get(self.url, {'limit': 2})

        self.assertEqual(response.data['analytics']['totalRevenue'], Decimal('1650'))
        self.assertEqual(response.data['analytics']['totalBookings'], 4)
        self.assertEqual(response.data['analytics']['averageStayDuration'], 2)
        self.assertEqual([row['guestName'] for row in response.data['data']], ['Carol', 'Alice'])
        self.assertEqual(response.data['pagination']['pages'], 2)

    def test_history_filters(self):
        self.populate()
        scenarios = [
            ({'roomType': 'single'}, 2),
            ({'guestName': 'ali'}, 2),
            ({'minNights': 2}, 2),
            ({'maxNights': 1}, 2),
            ({'status': 'completed'}, 2),
            ({'roomNo': 201}, 1),
            ({'startDate': '2026-02-01'}, 2),
            ({'endDate': '2026-01-20'}, 2),
            ({'startDate': '2026-01-16', 'endDate': '2026-02-03'}, 2),
        ]

        for params, expected in scenarios:
            with self.subTest(params=params):
                response = self.client.get(self.url, params)
                self.assertEqual(response.data['analytics']['totalBookings'], expected)

    def test_invalid_filters(self):
        response = self.client.get(self.url, {'reportType': 'everything'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.get(self.url, {'startDate': '2026-02-01', 'endDate': '2026-01-01'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_total_revenue(self):
        self.populate()

        totals = self.report('total-revenue')

        self.assertEqual(totals['totalRevenue'], Decimal('1650'))
        self.assertEqual(totals['totalNights'], 8)
        self.assertEqual(totals['averageRevenuePerBooking'], Decimal('412.5'))

    def test_revenue_by_room_type(self):
        self.populate()

        rows = self.report('revenue-by-room-type')

        self.assertEqual([row['roomType'] for row in rows], ['double', 'single', 'suite'])
        single = rows[1]
        self.assertEqual(single['totalRevenue'], Decimal('300'))
        self.assertEqual(single['bookingCount'], 2)
        self.assertEqual(single['rooms'], [101])

    def test_revenue_by_room_no(self):
        self.populate()

        rows = self.report('revenue-by-room-no')

        self.assertEqual([row['roomNo'] for row in rows], [101, 201, 301])
        self.assertEqual(rows[0]['totalNights'], 3)
        self.assertEqual(rows[0]['averageRevenuePerNight'], Decimal('100'))

    def test_revenue_by_month(self):
        self.populate()

        rows = self.report('revenue-by-month')

        self.assertEqual(
            [(row['year'], row['month'], row['monthName'], row['bookingCount']) for row in rows],
            [(2026, 1, 'Jan', 2), (2026, 2, 'Feb', 2)]
        )
        self.assertEqual(rows[0]['totalRevenue'], Decimal('350'))
        self.assertEqual(rows[1]['totalRevenue'], Decimal('1300'))

    def test_average_stay_duration(self):
        self.populate()

        stats = self.report('average-stay-duration')

        self.assertEqual(stats['averageStayDuration'], 2)
        self.assertEqual(stats['minStay'], 1)
        self.assertEqual(stats['maxStay'], 4)

    def test_guest_repeat_count(self):
        self.populate()

        rows = self.report('guest-repeat-count')

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['guestName'], 'Alice')
        self.assertEqual(rows[0]['visitCount'], 2)
        self.assertEqual(rows[0]['totalSpent'], Decimal('1400'))
        self.assertEqual(rows[0]['totalNights'], 6)

    def test_status_breakdown(self):
        self.populate()

        breakdown = {row['status']: row for row in self.report('dashboard-stats')['statusBreakdown']}
        self.assertEqual(breakdown['completed']['percentage'], 50)
        self.assertEqual(breakdown['early_checkout']['count'], 1)
        self.assertEqual(breakdown['extended_stay']['percentage'], 25)

        comparison = {row['status']: row for row in self.report('stay-comparison')}
        self.assertEqual(comparison['extended_stay']['totalRevenue'], Decimal('1200'))
        self.assertEqual(comparison['completed']['averageNights'], 1.5)


class AuthTestCase(APITestCase):
    """Admin registration, login and bearer tokens"""

    def test_register_returns_working_token(self):
        response = self.client.post('/api/auth/register/', {
            'username': 'manager', 'password': 'secret-pass'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['data']['user']['username'], 'manager')

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['data']['token']}")
        response = self.client.get('/api/rooms/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_register_rejects_taken_username(self):
        make_admin('manager')

        response = self.client.post('/api/auth/register/', {
            'username': 'manager', 'password': 'other-pass'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['message'], 'Username already taken')

    def test_register_requires_credentials(self):
        response = self.client.post('/api/auth/register/', {'username': '  ', 'password': ''}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_login(self):
        make_admin('manager')

        response = self.client.post('/api/auth/login/', {
            'username': 'manager', 'password': 'secret-pass'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('token', response.data['data'])

    def test_login_with_wrong_password(self):
        make_admin('manager')

        response = self.client.post('/api/auth/login/', {
            'username': 'manager', 'password': 'wrong'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.data['message'], 'Invalid credentials')
        self.assertTrue(response['WWW-Authenticate'].startswith('Bearer'))

    def test_login_without_password(self):
        make_admin('manager')

        response = self.client.post('/api/auth/login/', {'username': 'manager'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.data['message'], 'Username and password required')

    def test_requests_without_token_are_rejected(self):
        response = self.client.get('/api/bookings/')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(response.data['success'])
        self.assertTrue(response['WWW-Authenticate'].startswith('Bearer'))

    def test_invalid_and_expired_tokens(self):
        user = make_admin('manager')
        expired = TokenService(settings.JWT_SECRET, lifetime=timedelta(minutes=-5)).issue(user)

        for token, message in [('not-a-token', 'Invalid token'), (expired, 'Token expired')]:
            with self.subTest(message=message):
                self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {token}')
                response = self.client.get('/api/rooms/')
                self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
                self.assertEqual(response.data['message'], message)


class ServiceTestCase(APITestCase):
    """Public endpoints, error envelope and seeding"""

    def test_welcome_and_health(self):
        self.assertEqual(self.client.get('/').json(), {'message': 'Hello from Hotel Management'})
        self.assertEqual(self.client.get('/health').json(), {'status': 'ok'})

    def test_unknown_route(self):
        response = self.client.get('/nowhere/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json(), {'success': False, 'message': 'Route not found'})

    def test_flatten_messages(self):
        detail = {'roomNo': ['A valid integer is required.'], 'non_field_errors': ['Bad request']}

        self.assertEqual(
            list(flatten_messages(detail)),
            ['roomNo: A valid integer is required.', 'Bad request']
        )

    def test_model_validation_errors_become_bad_requests(self):
        room = make_room(101)
        booking = BookingLifecycle().create(room.id, 'Alice', 2)

        with self.assertRaises(DjangoValidationError) as raised:
            BookingLifecycle().update(booking.id, guest_name='x' * 60)

        response = envelope_exception_handler(raised.exception, {})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data['success'])
        self.assertTrue(response.data['message'].startswith('guest_name: '))
        self.assertEqual(len(response.data['error']), 1)
        booking.refresh_from_db()
        self.assertEqual(booking.guest_name, 'Alice')

    def test_populate_db_is_idempotent(self):
        call_command('populate_db', stdout=StringIO())
        call_command('populate_db', stdout=StringIO())

        self.assertEqual(Room.objects.count(), 6)
        self.assertEqual(Room.objects.filter(available=True).count(), 6)
