"""Booking change-feed WebSocket consumer."""

import logging
from typing import Dict, Any, Optional

from channels.db import database_sync_to_async

from ..change_feed import ChangeFeed, RefetchCoalescer, Subscription, SubscriptionDenied
from .base import BaseConsumer

logger = logging.getLogger(__name__)


class BookingChangesConsumer(BaseConsumer):
    """
    Follow one booking's lifecycle.

    Riders, chauffeurs and operators on the booking connect to
    ``ws/lifecycle/<booking_id>/changes/``. Each ``booking.changed`` signal
    triggers a refetch through the lifecycle store and the fresh snapshot is
    pushed as ``booking_snapshot``.
    """

    subscription: Optional[Subscription] = None

    async def on_connect(self):
        self.booking_id = int(self.scope["url_route"]["kwargs"]["booking_id"])
        self.feed = ChangeFeed(self.channel_layer)
        self.coalescer = RefetchCoalescer(self.send_snapshot)

        try:
            self.subscription = await self.feed.subscribe(self.booking_id, self.user, self.channel_name)
        except SubscriptionDenied:
            await self.send_error("You are not a party to this booking")
            await self.close(code=4403)
            return

        self.joined_groups.add(self.subscription.group)
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "booking_id": self.booking_id,
        })
        await self.send_snapshot(self.booking_id)

    async def on_disconnect(self, close_code):
        self.subscription = None
        coalescer = getattr(self, "coalescer", None)
        if coalescer is not None:
            coalescer.cancel()

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "refetch":
            self.coalescer.schedule(self.booking_id)
        elif msg_type == "unsubscribe":
            await self._handle_unsubscribe()
        elif msg_type == "ping":
            await self.send_success("pong")
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    async def _handle_unsubscribe(self):
        if self.subscription is None:
            await self.send_error("Not subscribed")
            return
        await self.feed.unsubscribe(self.subscription)
        self.joined_groups.discard(self.subscription.group)
        self.subscription = None
        await self.send_success("unsubscribed", booking_id=self.booking_id)

    # ---------------------- Group Event Handlers ----------------------

    async def booking_changed(self, event):
        """Sent by the lifecycle store after a committed write."""
        if self.subscription is None:
            return
        self.coalescer.schedule(event.get("booking_id", self.booking_id))

    # ---------------------- Snapshot ----------------------

    async def send_snapshot(self, booking_id: int):
        payload = await self._load_snapshot(booking_id)
        await self.send_json({"type": "booking_snapshot", "booking": payload})

    @database_sync_to_async
    def _load_snapshot(self, booking_id: int) -> Dict[str, Any]:
        from bookings.serializers import BookingSnapshotSerializer
        from services.lifecycle.store import get_current

        snapshot = get_current(booking_id)
        return BookingSnapshotSerializer(snapshot, context={"user": self.user}).data
