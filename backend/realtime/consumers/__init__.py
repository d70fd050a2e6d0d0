"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .booking_consumer import BookingChangesConsumer

__all__ = [
    "BaseConsumer",
    "BookingChangesConsumer",
]
