import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from channels.db import database_sync_to_async
from channels.layers import InMemoryChannelLayer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser
from django.test import SimpleTestCase, TestCase

from accounts.models import User
from services.lifecycle import store
from .change_feed import BOOKING_CHANGED, ChangeFeed, RefetchCoalescer, SubscriptionDenied
from .routing import websocket_urlpatterns


class ChangeFeedTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.stranger = User.objects.create_user(username='stranger', password='pass1234', role=User.RIDER)
		self.booking = store.create_booking(rider=self.rider)

	async def test_party_receives_change_signals(self):
		layer = InMemoryChannelLayer()
		feed = ChangeFeed(layer)
		channel = await layer.new_channel()

		subscription = await feed.subscribe(self.booking.id, self.rider, channel)
		await feed.publish_async(self.booking.id)
		message = await asyncio.wait_for(layer.receive(channel), timeout=1)

		self.assertEqual(subscription.group, f"booking_{self.booking.id}")
		self.assertEqual(message, {"type": BOOKING_CHANGED, "booking_id": self.booking.id})

	async def test_non_party_is_denied(self):
		feed = ChangeFeed(InMemoryChannelLayer())

		with self.assertRaises(SubscriptionDenied):
			await feed.subscribe(self.booking.id, self.stranger, 'chan')
		with self.assertRaises(SubscriptionDenied):
			await feed.subscribe(self.booking.id, AnonymousUser(), 'chan')
		with self.assertRaises(SubscriptionDenied):
			await feed.subscribe(999999, self.rider, 'chan')

	async def test_unsubscribe_stops_signals(self):
		layer = InMemoryChannelLayer()
		feed = ChangeFeed(layer)
		channel = await layer.new_channel()

		subscription = await feed.subscribe(self.booking.id, self.rider, channel)
		await feed.unsubscribe(subscription)
		await feed.publish_async(self.booking.id)

		with self.assertRaises(asyncio.TimeoutError):
			await asyncio.wait_for(layer.receive(channel), timeout=0.2)

	def test_publish_failures_are_logged_not_raised(self):
		layer = MagicMock()
		layer.group_send = AsyncMock(side_effect=RuntimeError('redis down'))

		with self.assertLogs('realtime.change_feed', level='ERROR'):
			ChangeFeed(layer).publish(self.booking.id)


class RefetchCoalescerTests(SimpleTestCase):
	async def test_bursts_collapse_into_one_follow_up(self):
		calls = []
		release = asyncio.Event()

		async def refetch(booking_id):
			calls.append(booking_id)
			await release.wait()

		coalescer = RefetchCoalescer(refetch)
		coalescer.schedule(7)
		await asyncio.sleep(0)
		self.assertTrue(coalescer.is_running(7))

		for _ in range(5):
			coalescer.schedule(7)
		release.set()
		await coalescer.drain()

		self.assertEqual(calls, [7, 7])
		self.assertFalse(coalescer.is_running(7))

	async def test_bookings_are_independent(self):
		calls = []

		async def refetch(booking_id):
			calls.append(booking_id)

		coalescer = RefetchCoalescer(refetch)
		coalescer.schedule(1)
		coalescer.schedule(2)
		await coalescer.drain()

		self.assertEqual(sorted(calls), [1, 2])

	async def test_failed_refetch_does_not_wedge_the_booking(self):
		async def refetch(booking_id):
			raise RuntimeError('boom')

		coalescer = RefetchCoalescer(refetch)
		with self.assertLogs('realtime.change_feed', level='ERROR'):
			await coalescer.signal(3)

		self.assertFalse(coalescer.is_running(3))

	async def test_cancel_stops_outstanding_refetches(self):
		started = asyncio.Event()
		finished = []

		async def refetch(booking_id):
			started.set()
			await asyncio.sleep(10)
			finished.append(booking_id)

		coalescer = RefetchCoalescer(refetch)
		coalescer.schedule(5)
		await started.wait()

		coalescer.cancel()
		await asyncio.sleep(0)
		await asyncio.sleep(0)
		await coalescer.drain()

		self.assertEqual(finished, [])
		self.assertFalse(coalescer.is_running(5))


class BookingChangesConsumerTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.stranger = User.objects.create_user(username='stranger', password='pass1234', role=User.RIDER)
		self.booking = store.create_booking(rider=self.rider)
		self.application = URLRouter(websocket_urlpatterns)

	def _communicator(self, user):
		communicator = WebsocketCommunicator(self.application, f"/ws/lifecycle/{self.booking.id}/changes/")
		communicator.scope["user"] = user
		return communicator

	async def test_party_gets_snapshot_and_refetch_on_change(self):
		communicator = self._communicator(self.rider)
		connected, _ = await communicator.connect()
		self.assertTrue(connected)

		hello = await communicator.receive_json_from()
		initial = await communicator.receive_json_from()
		self.assertEqual(hello["type"], "connection_established")
		self.assertEqual(initial["type"], "booking_snapshot")
		self.assertEqual(initial["booking"]["stage"], "pending")

		await database_sync_to_async(store.advance)(self.booking.id, 'cancelled', 'rider', actor=self.rider)
		await ChangeFeed().publish_async(self.booking.id)

		update = await communicator.receive_json_from(timeout=2)
		self.assertEqual(update["type"], "booking_snapshot")
		self.assertEqual(update["booking"]["stage"], "cancelled")

		await communicator.disconnect()

	async def test_stranger_is_closed(self):
		communicator = self._communicator(self.stranger)
		await communicator.connect()

		error = await communicator.receive_json_from()
		closed = await communicator.receive_output()

		self.assertEqual(error["type"], "error")
		self.assertEqual(closed["type"], "websocket.close")
		self.assertEqual(closed["code"], 4403)
		await communicator.disconnect()

	async def test_anonymous_is_rejected(self):
		communicator = self._communicator(AnonymousUser())
		connected, code = await communicator.connect()

		self.assertFalse(connected)
		self.assertEqual(code, 4401)

	async def test_disconnect_cancels_pending_refetches(self):
		with patch.object(RefetchCoalescer, 'cancel', autospec=True) as cancel:
			communicator = self._communicator(self.rider)
			await communicator.connect()
			await communicator.receive_json_from()
			await communicator.receive_json_from()
			await communicator.disconnect()

		cancel.assert_called_once()
