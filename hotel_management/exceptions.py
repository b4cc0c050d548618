import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.exceptions import APIException, AuthenticationFailed, NotFound, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler, set_rollback

logger = logging.getLogger(__name__)


class InvalidInput(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input"
    default_code = "invalid_input"


class InvalidCredentials(AuthenticationFailed):
    default_detail = "Invalid credentials"
    default_code = "invalid_credentials"


class RoomNotFound(NotFound):
    default_detail = "Room not found"


class BookingNotFound(NotFound):
    default_detail = "Booking not found"


class Conflict(APIException):
    """A request that clashes with current state and needs a caller decision.

    ``resolution`` is the payload telling the caller how the conflict can be
    resolved (see ``lifecycle.conflict_payload``).
    """

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"
    default_code = "conflict"

    def __init__(self, detail=None, code=None, resolution=None):
        super().__init__(detail, code)
        self.resolution = resolution


class RoomNumberTaken(Conflict):
    default_detail = "Room number already exists"


class RoomUnavailable(Conflict):
    default_detail = "Room is not available"


class RoomHasActiveBooking(Conflict):
    default_detail = "Room has active bookings"


class TransientConflict(APIException):
    """The database aborted the transaction because of a concurrent write."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "The request collided with a concurrent update, please retry"
    default_code = "transient_conflict"


def flatten_messages(detail, field=None):
    if isinstance(detail, dict):
        for key, value in detail.items():
            yield from flatten_messages(value, None if key in ("detail", "non_field_errors") else key)
    elif isinstance(detail, (list, tuple)):
        for item in detail:
            yield from flatten_messages(item, field)
    elif field:
        yield f"{field}: {detail}"
    else:
        yield str(detail)


def envelope_exception_handler(exc, context):
    """Render every error as ``{"success": false, "message": ...}``."""
    if isinstance(exc, DjangoValidationError):
        exc = ValidationError(exc.message_dict if hasattr(exc, "error_dict") else exc.messages)

    response = exception_handler(exc, context)
    if response is None:
        request = context.get("request")
        logger.error(
            "Unhandled error on %s %s",
            getattr(request, "method", "?"),
            getattr(request, "path", "?"),
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        set_rollback()
        return Response(
            {"success": False, "message": "Internal server error"},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    messages = list(flatten_messages(response.data))
    body = {"success": False, "message": ", ".join(messages)}
    if isinstance(exc, ValidationError):
        body["error"] = messages
    resolution = getattr(exc, "resolution", None)
    if resolution:
        body["data"] = resolution
    if isinstance(exc, TransientConflict):
        body["retryable"] = True
    response.data = body
    return response
