import logging

from django.contrib.auth import authenticate, get_user_model
from django.http import JsonResponse
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny

from . import analytics
from .authentication import BearerTokenAuthentication, get_token_service
from .exceptions import InvalidCredentials, InvalidInput
from .lifecycle import BookingLifecycle
from .models import Booking, Room
from .registry import BookingLedger, RoomRegistry
from .responses import envelope
from .serializers import (
    BookingHistorySerializer,
    BookingInput,
    BookingSerializer,
    BookingUpdateInput,
    CheckoutSummarySerializer,
    CredentialsInput,
    HistoryFilterInput,
    RoomFilterInput,
    RoomReleaseInput,
    RoomSerializer,
)

logger = logging.getLogger(__name__)


def welcome(request):
    return JsonResponse({"message": "Hello from Hotel Management"})


def health_check(request):
    return JsonResponse({"status": "ok"})


def not_found(request, exception=None):
    return JsonResponse({"success": False, "message": "Route not found"}, status=404)


def server_error(request):
    return JsonResponse({"success": False, "message": "Internal server error"}, status=500)


def plain(data):
    """QueryDicts turn missing booleans into False; serializers get plain dicts."""
    return data.dict() if hasattr(data, "dict") else data


def parse_id(value, label):
    try:
        pk = int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {label} ID format")
    if pk < 1:
        raise InvalidInput(f"Invalid {label} ID format")
    return pk


class AuthViewSet(viewsets.ViewSet):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get_authenticate_header(self, request):
        # failed logins answer 401 with a bearer challenge
        return f'{BearerTokenAuthentication.keyword} realm="api"'

    @action(detail=False, methods=["post"])
    def register(self, request):
        """Create an admin account and hand back its first token"""
        credentials = CredentialsInput(data=request.data)
        if not credentials.is_valid():
            raise InvalidInput("Username and password are required")
        username = credentials.validated_data["username"]
        password = credentials.validated_data["password"]

        User = get_user_model()
        if User.objects.filter(username=username).exists():
            raise InvalidInput("Username already taken")

        user = User.objects.create_user(username=username, password=password, is_staff=True)
        logger.info("Admin %s registered", username)
        token = get_token_service().issue(user)
        return envelope(
            {"user": {"id": user.pk, "username": user.username}, "token": token},
            message="Admin registered successfully",
            status=status.HTTP_201_CREATED,
        )

    @action(detail=False, methods=["post"])
    def login(self, request):
        credentials = CredentialsInput(data=request.data)
        if not credentials.is_valid():
            raise InvalidCredentials("Username and password required")

        user = authenticate(
            request,
            username=credentials.validated_data["username"],
            password=credentials.validated_data["password"],
        )
        if user is None:
            logger.warning("Failed login for %s", credentials.validated_data["username"])
            raise InvalidCredentials()
        return envelope({"token": get_token_service().issue(user)}, message="Login successful")


class RoomViewSet(viewsets.GenericViewSet):
    queryset = Room.objects.all()
    serializer_class = RoomSerializer

    def get_registry(self):
        return RoomRegistry(BookingLifecycle())

    def list(self, request):
        """Rooms ordered by number, optionally filtered by type, availability, beds and price"""
        filters = RoomFilterInput(data=plain(request.query_params))
        filters.is_valid(raise_exception=True)
        data = filters.validated_data
        rooms = self.get_registry().search(
            room_type=data.get("type"),
            available=data.get("available"),
            min_beds=data.get("minBeds"),
            max_price=data.get("maxPrice"),
        )
        page = self.paginate_queryset(rooms)
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        room = self.get_registry().get(parse_id(pk, "room"))
        return envelope(self.get_serializer(room).data)

    def create(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        room = self.get_registry().create(serializer.validated_data)
        return envelope(
            self.get_serializer(room).data,
            message="Room created successfully",
            status=status.HTTP_201_CREATED,
        )

    def update(self, request, pk=None, **kwargs):
        """Update room details.

        Marking an occupied room available needs a resolution for the booking
        that holds it; without one the response is a 409 listing the options.
        """
        room_id = parse_id(pk, "room")
        serializer = self.get_serializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        release = RoomReleaseInput(data=plain(request.data))
        release.is_valid(raise_exception=True)

        room = self.get_registry().update(
            room_id,
            serializer.validated_data,
            available=release.validated_data["available"],
            resolution=release.get_resolution(),
        )
        return envelope(self.get_serializer(room).data, message="Room updated successfully")

    def partial_update(self, request, pk=None, **kwargs):
        return self.update(request, pk, **kwargs)

    def destroy(self, request, pk=None):
        room_id = parse_id(pk, "room")
        release = RoomReleaseInput(data=plain(request.data) or plain(request.query_params))
        release.is_valid(raise_exception=True)
        self.get_registry().delete(room_id, resolution=release.get_resolution())
        return envelope(message="Room deleted successfully")


class BookingViewSet(viewsets.GenericViewSet):
    queryset = Booking.objects.all()
    serializer_class = BookingSerializer

    def get_lifecycle(self):
        return BookingLifecycle()

    def list(self, request):
        page = self.paginate_queryset(BookingLedger().all())
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        booking = BookingLedger().get(parse_id(pk, "booking"))
        return envelope(self.get_serializer(booking).data)

    def create(self, request):
        payload = BookingInput(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        booking = self.get_lifecycle().create(
            data["roomId"], data["guestName"], data["nights"], check_in_date=data.get("checkInDate")
        )
        return envelope(
            self.get_serializer(booking).data,
            message="Booking created successfully",
            status=status.HTTP_201_CREATED,
        )

    def update(self, request, pk=None, **kwargs):
        """Only the guest name and the planned nights can change"""
        booking_id = parse_id(pk, "booking")
        payload = BookingUpdateInput(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        self.get_lifecycle().update(booking_id, guest_name=data.get("guestName"), nights=data.get("nights"))
        booking = BookingLedger().get(booking_id)
        return envelope(self.get_serializer(booking).data, message="Booking updated successfully")

    def partial_update(self, request, pk=None, **kwargs):
        return self.update(request, pk, **kwargs)

    def destroy(self, request, pk=None):
        self.get_lifecycle().delete(parse_id(pk, "booking"))
        return envelope(message="Booking deleted successfully")

    @action(detail=True, methods=["post"])
    def checkout(self, request, pk=None):
        history = self.get_lifecycle().checkout(parse_id(pk, "booking"))
        return envelope(CheckoutSummarySerializer(history).data, message="Checkout completed successfully")

    @action(detail=False, methods=["get"])
    def summary(self, request):
        """Nights and revenue of the active bookings, per room"""
        return envelope(BookingLedger().summary())

    @action(detail=False, methods=["get"])
    def history(self, request):
        """Completed stays, either as a filtered page or as a named report"""
        filters = HistoryFilterInput(data=plain(request.query_params))
        filters.is_valid(raise_exception=True)
        history = analytics.filter_history(**filters.history_filters())

        report_type = filters.validated_data.get("reportType")
        if report_type:
            return envelope(analytics.run_report(report_type, history), reportType=report_type)

        page = self.paginate_queryset(history.order_by("-check_out_date"))
        return self.paginator.get_paginated_response(
            BookingHistorySerializer(page, many=True).data,
            analytics=analytics.overview(history),
            filters={key: value for key, value in request.query_params.items() if key not in ("page", "limit")},
        )
