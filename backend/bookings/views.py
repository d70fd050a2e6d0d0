"""Lifecycle REST API: bookings, mutations, history."""

import logging

from rest_framework import status
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from services.lifecycle import store
from services.lifecycle.exceptions import (
    BookingNotFoundError,
    InvalidTransitionError,
    UnknownFieldError,
    InvalidFieldValueError,
    StoreWriteError,
    TransitionNotPermittedError,
)
from services.lifecycle.stages import ActorRole
from services.lifecycle.transitions import allowed_next_stages
from .permissions import IsBookingParty, IsOperator, IsRider, is_operator
from .serializers import (
    AdvanceRequestSerializer,
    BookingCreateSerializer,
    BookingSnapshotSerializer,
    HistoryEntrySerializer,
    MutateRequestSerializer,
)

logger = logging.getLogger(__name__)


def error_response(code: str, message, status_code: int, **extra) -> Response:
    return Response({"error": code, "message": message, **extra}, status=status_code)


def lifecycle_error_response(exc: Exception) -> Response:
    """Translate a lifecycle exception into its HTTP response."""
    if isinstance(exc, TransitionNotPermittedError):
        return error_response(
            "transition_not_permitted", str(exc), status.HTTP_403_FORBIDDEN,
            from_stage=str(exc.from_stage),
            to_stage=str(exc.to_stage),
        )
    if isinstance(exc, InvalidTransitionError):
        return error_response(
            "invalid_transition", str(exc), status.HTTP_409_CONFLICT,
            from_stage=str(exc.from_stage),
            to_stage=str(exc.to_stage),
            allowed=sorted(s.value for s in allowed_next_stages(exc.from_stage)),
        )
    if isinstance(exc, BookingNotFoundError):
        return error_response("not_found", str(exc), status.HTTP_404_NOT_FOUND)
    if isinstance(exc, (UnknownFieldError, InvalidFieldValueError)):
        return error_response("invalid_field", str(exc), status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, StoreWriteError):
        return error_response(
            "store_write_failure", "The change could not be saved. Please retry.",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    raise exc


LIFECYCLE_ERRORS = (
    InvalidTransitionError,
    BookingNotFoundError,
    UnknownFieldError,
    InvalidFieldValueError,
    StoreWriteError,
)


def resolve_actor_role(user, requested=None) -> str:
    """
    The role a request acts as.

    Riders and chauffeurs always act as themselves. Operators may act as a
    rider, chauffeur or operator; the system role belongs to the payment
    reconciler.
    """
    if requested == ActorRole.SYSTEM:
        raise PermissionDenied("The system role cannot be requested")
    if is_operator(user):
        return requested or ActorRole.OPERATOR
    if requested and requested != user.role:
        raise PermissionDenied(f"You cannot act as {requested}")
    return user.role


class BookingViewMixin:
    """Loads a booking through the store and applies object permissions."""

    def get_snapshot(self, request, booking_id):
        snapshot = store.get_current(booking_id)
        self.check_object_permissions(request, snapshot.booking)
        return snapshot

    def snapshot_response(self, request, booking_id, status_code=status.HTTP_200_OK):
        snapshot = store.get_current(booking_id)
        return Response(BookingSnapshotSerializer(snapshot, context={"request": request}).data, status=status_code)


class BookingCreateView(BookingViewMixin, APIView):
    """
    POST: Rider creates a booking.
    """
    permission_classes = [IsAuthenticated, IsRider]

    def post(self, request):
        serializer = BookingCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return error_response("invalid_request", serializer.errors, status.HTTP_400_BAD_REQUEST)

        try:
            booking = store.create_booking(rider=request.user, **serializer.validated_data)
        except StoreWriteError as exc:
            return lifecycle_error_response(exc)

        return self.snapshot_response(request, booking.pk, status.HTTP_201_CREATED)


class BookingDetailView(BookingViewMixin, APIView):
    """
    GET: Current snapshot of a booking, stage resolved from raw fields.
    """
    permission_classes = [IsAuthenticated, IsBookingParty]

    def get(self, request, booking_id):
        try:
            snapshot = self.get_snapshot(request, booking_id)
        except BookingNotFoundError as exc:
            return lifecycle_error_response(exc)
        return Response(BookingSnapshotSerializer(snapshot, context={"request": request}).data)


class BookingHistoryView(BookingViewMixin, APIView):
    """
    GET: History entries in creation order. ``?after=<entry id>`` resumes a listing.
    """
    permission_classes = [IsAuthenticated, IsBookingParty]

    def get(self, request, booking_id):
        after = request.query_params.get("after")
        if after not in (None, ""):
            try:
                after = int(after)
            except ValueError:
                return error_response("invalid_request", "after must be an entry id", status.HTTP_400_BAD_REQUEST)
        else:
            after = None

        try:
            self.get_snapshot(request, booking_id)
            entries = store.get_history(booking_id, after_id=after)
        except BookingNotFoundError as exc:
            return lifecycle_error_response(exc)

        return Response({
            "count": len(entries),
            "entries": HistoryEntrySerializer(entries, many=True).data,
        })


class LifecycleMutateView(BookingViewMixin, APIView):
    """
    POST: Apply raw-field changes to a booking through transition validation.
    """
    permission_classes = [IsAuthenticated, IsBookingParty]

    def apply(self, booking_id, fields, actor_role, notes, actor, metadata):
        return store.mutate(booking_id, fields, actor_role, notes=notes, actor=actor, metadata=metadata)

    def post(self, request):
        serializer = MutateRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return error_response("invalid_request", serializer.errors, status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data
        booking_id = data["bookingId"]

        try:
            self.get_snapshot(request, booking_id)
            actor_role = resolve_actor_role(request.user, data.get("actorRole"))
            self.apply(
                booking_id, data["fields"], actor_role,
                notes=data.get("notes"), actor=request.user, metadata=data.get("metadata"),
            )
        except LIFECYCLE_ERRORS as exc:
            return lifecycle_error_response(exc)

        return self.snapshot_response(request, booking_id)


class LegacyMutateView(LifecycleMutateView):
    """
    POST: Raw-field write without transition validation. Operators only.

    Deprecated; every use is logged and tagged in history.
    """
    permission_classes = [IsAuthenticated, IsOperator]

    def apply(self, booking_id, fields, actor_role, notes, actor, metadata):
        return store.apply_legacy_fields(booking_id, fields, actor_role, notes=notes, actor=actor, metadata=metadata)


class BookingAdvanceView(BookingViewMixin, APIView):
    """
    POST: Move a booking to a named stage.
    """
    permission_classes = [IsAuthenticated, IsBookingParty]

    def post(self, request, booking_id):
        serializer = AdvanceRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return error_response("invalid_request", serializer.errors, status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        try:
            self.get_snapshot(request, booking_id)
            actor_role = resolve_actor_role(request.user, data.get("actorRole"))
            store.advance(
                booking_id, data["stage"], actor_role,
                actor=request.user, notes=data.get("notes"), fields=data.get("fields"),
            )
        except LIFECYCLE_ERRORS as exc:
            return lifecycle_error_response(exc)

        return self.snapshot_response(request, booking_id)
