from decimal import Decimal

from django.core.management.base import BaseCommand
from hotel_management.models import Room


class Command(BaseCommand):
    help = 'Populate database with sample hotel rooms'

    def handle(self, *args, **options):
        rooms_data = [
            {
                'room_no': 101,
                'room_type': Room.Type.SINGLE,
                'beds': 1,
                'price_per_night': Decimal('80.00'),
                'description': 'Comfortable single room with city view'
            },
            {
                'room_no': 102,
                'room_type': Room.Type.SINGLE,
                'beds': 1,
                'price_per_night': Decimal('85.00'),
                'description': 'Single room with balcony'
            },
            {
                'room_no': 201,
                'room_type': Room.Type.DOUBLE,
                'beds': 2,
                'price_per_night': Decimal('120.00'),
                'description': 'Spacious double room with ocean view'
            },
            {
                'room_no': 202,
                'room_type': Room.Type.DOUBLE,
                'beds': 2,
                'price_per_night': Decimal('130.00'),
                'description': 'Double room with city view and mini bar'
            },
            {
                'room_no': 301,
                'room_type': Room.Type.SUITE,
                'beds': 3,
                'price_per_night': Decimal('180.00'),
                'description': 'Family suite with kitchenette'
            },
            {
                'room_no': 401,
                'room_type': Room.Type.SUITE,
                'beds': 4,
                'price_per_night': Decimal('350.00'),
                'description': 'Presidential suite with all amenities'
            },
        ]

        for room_data in rooms_data:
            room, created = Room.objects.get_or_create(
                room_no=room_data['room_no'],
                defaults=room_data
            )

            if created:
                self.stdout.write(f'Created room: {room.room_no} - {room.room_type}')
            else:
                self.stdout.write(f'Room {room.room_no} already exists')

        self.stdout.write(
            self.style.SUCCESS('Successfully populated database with sample rooms')
        )
