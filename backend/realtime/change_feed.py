"""
Booking change feed.

Writers publish an opaque ``booking.changed`` signal to the booking's group
after every committed lifecycle write. Subscribers never trust a payload:
on each signal they re-read the booking through the lifecycle store.
Delivery is best-effort and unordered, so a subscriber may coalesce bursts
of signals into one refetch.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Set

from asgiref.sync import async_to_sync
from channels.db import database_sync_to_async
from channels.layers import get_channel_layer

from bookings.models import Booking

logger = logging.getLogger(__name__)

BOOKING_CHANGED = "booking.changed"


def booking_group(booking_id) -> str:
    return f"booking_{booking_id}"


class SubscriptionDenied(Exception):
    """Raised when a user who is not a party to a booking asks for its changes."""
    pass


@dataclass(frozen=True)
class Subscription:
    booking_id: int
    user_id: int
    channel_name: str

    @property
    def group(self) -> str:
        return booking_group(self.booking_id)


def _is_party(booking_id, user) -> bool:
    booking = Booking.objects.filter(pk=booking_id).only('rider_id', 'chauffeur_id', 'operator_id').first()
    return booking is not None and booking.is_party(user)


class ChangeFeed:
    """Subscribe channels to a booking's changes and publish change signals."""

    def __init__(self, channel_layer=None):
        self.channel_layer = channel_layer or get_channel_layer()

    async def subscribe(self, booking_id, user, channel_name: str) -> Subscription:
        if user is None or getattr(user, 'is_anonymous', True):
            raise SubscriptionDenied("Authentication required")
        allowed = await database_sync_to_async(_is_party)(booking_id, user)
        if not allowed:
            raise SubscriptionDenied(f"User {user.id} is not a party to booking {booking_id}")

        subscription = Subscription(booking_id=int(booking_id), user_id=user.id, channel_name=channel_name)
        await self.channel_layer.group_add(subscription.group, channel_name)
        logger.debug("User %s subscribed to booking %s", user.id, booking_id)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.channel_layer.group_discard(subscription.group, subscription.channel_name)

    async def publish_async(self, booking_id) -> None:
        await self.channel_layer.group_send(
            booking_group(booking_id),
            {"type": BOOKING_CHANGED, "booking_id": int(booking_id)},
        )

    def publish(self, booking_id) -> None:
        """Send a change signal. Failures are logged, never raised to the writer."""
        if self.channel_layer is None:
            logger.warning("No channel layer configured; change for booking %s not published", booking_id)
            return
        try:
            async_to_sync(self.publish_async)(booking_id)
        except Exception:
            logger.exception("Failed to publish change for booking %s", booking_id)


def publish_booking_changed(booking_id) -> None:
    """Entry point used by the lifecycle store after a write commits."""
    ChangeFeed().publish(booking_id)


class RefetchCoalescer:
    """
    Keep at most one refetch outstanding per booking.

    Signals that arrive while a refetch is running are folded into a single
    follow-up refetch once it finishes.
    """

    def __init__(self, refetch: Callable[[int], Awaitable[None]]):
        self._refetch = refetch
        self._running: Set[int] = set()
        self._dirty: Set[int] = set()
        self._tasks: Dict[int, asyncio.Task] = {}

    def is_running(self, booking_id: int) -> bool:
        return booking_id in self._running

    async def signal(self, booking_id: int) -> None:
        if booking_id in self._running:
            self._dirty.add(booking_id)
            return

        self._running.add(booking_id)
        try:
            while True:
                self._dirty.discard(booking_id)
                try:
                    await self._refetch(booking_id)
                except Exception:
                    logger.exception("Refetch failed for booking %s", booking_id)
                if booking_id not in self._dirty:
                    break
        finally:
            self._running.discard(booking_id)

    def schedule(self, booking_id: int) -> None:
        """Run ``signal`` in the background so the caller can keep receiving."""
        if booking_id in self._running or booking_id in self._tasks:
            self._dirty.add(booking_id)
            return
        task = asyncio.ensure_future(self.signal(booking_id))
        self._tasks[booking_id] = task
        task.add_done_callback(lambda t: self._forget(booking_id, t))

    def _forget(self, booking_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(booking_id) is task:
            del self._tasks[booking_id]

    def cancel(self) -> None:
        """Stop every scheduled refetch; used when the subscriber goes away."""
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
        self._dirty.clear()

    async def drain(self) -> None:
        """Wait for every scheduled refetch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()))
