"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.booking_consumer import BookingChangesConsumer

websocket_urlpatterns = [
    # Booking change feed, shared by rider, chauffeur and operator
    # URL: ws://localhost:8000/ws/lifecycle/<booking_id>/changes/
    re_path(
        r"ws/lifecycle/(?P<booking_id>\d+)/changes/$",
        BookingChangesConsumer.as_asgi(),
        name="booking-changes-ws"
    ),
]
