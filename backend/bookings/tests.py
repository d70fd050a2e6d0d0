from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from accounts.models import User
from services.lifecycle import store
from services.lifecycle.exceptions import StoreWriteError
from services.payments.events import PaymentEvent
from services.payments.reconciler import Outcome, process_payment_event
from .models import Booking, BookingStatusHistory
from .views import (
	BookingAdvanceView,
	BookingCreateView,
	BookingDetailView,
	BookingHistoryView,
	LegacyMutateView,
	LifecycleMutateView,
)


class LifecycleApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.other_rider = User.objects.create_user(username='other', password='pass1234', role=User.RIDER)
		self.chauffeur = User.objects.create_user(username='chauffeur', password='pass1234', role=User.CHAUFFEUR)
		self.operator = User.objects.create_user(username='operator', password='pass1234', role=User.OPERATOR)
		self.booking = store.create_booking(
			rider=self.rider,
			pickup_address='Union Square',
			dropoff_address='SFO Terminal 2',
			quoted_price_cents=2500,
		)

	def _mutate(self, user, body, view=LifecycleMutateView):
		request = self.factory.post('/lifecycle/mutate', body, format='json')
		force_authenticate(request, user=user)
		return view.as_view()(request)

	def test_rider_creates_booking(self):
		request = self.factory.post('/lifecycle/bookings/', {
			'pickup_address': 'Ferry Building',
			'dropoff_address': 'Oakland Airport',
			'passenger_count': 2,
			'quoted_price_cents': 4000,
		}, format='json')
		force_authenticate(request, user=self.rider)
		response = BookingCreateView.as_view()(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['stage'], 'pending')
		self.assertEqual(response.data['booking']['rider']['id'], self.rider.id)
		self.assertEqual(response.data['status_text']['primary'], 'Ride Requested')

	def test_only_riders_create_bookings(self):
		request = self.factory.post('/lifecycle/bookings/', {}, format='json')
		force_authenticate(request, user=self.chauffeur)
		response = BookingCreateView.as_view()(request)

		self.assertEqual(response.status_code, 403)

	def test_mutate_moves_the_booking(self):
		response = self._mutate(self.chauffeur, {
			'bookingId': self.booking.id,
			'fields': {'chauffeur_stage_flag': 'driver_accepted'},
			'notes': 'Accepted from the app',
		})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['stage'], 'driver_accepted')
		self.assertEqual(response.data['booking']['chauffeur']['id'], self.chauffeur.id)
		self.assertIn('offer_sent', response.data['allowed_next_stages'])

	def test_illegal_transition_is_409(self):
		response = self._mutate(self.rider, {
			'bookingId': self.booking.id,
			'fields': {'ride_stage': 'completed'},
		})

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'invalid_transition')
		self.assertEqual(response.data['from_stage'], 'pending')
		self.assertEqual(response.data['to_stage'], 'completed')
		self.assertEqual(BookingStatusHistory.objects.filter(booking=self.booking).count(), 1)

	def test_unknown_booking_is_404(self):
		response = self._mutate(self.operator, {'bookingId': 999999, 'fields': {'legacy_status': 'cancelled'}})

		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['error'], 'not_found')

	def test_bad_requests_are_400(self):
		unknown = self._mutate(self.rider, {'bookingId': self.booking.id, 'fields': {'paid_at_ts': 1}})
		empty = self._mutate(self.rider, {'bookingId': self.booking.id, 'fields': {}})

		self.assertEqual(unknown.status_code, 400)
		self.assertEqual(unknown.data['error'], 'invalid_field')
		self.assertEqual(empty.status_code, 400)
		self.assertEqual(empty.data['error'], 'invalid_request')

	@patch('services.lifecycle.store.mutate', side_effect=StoreWriteError('db down'))
	def test_store_failure_is_503(self, mock_mutate):
		response = self._mutate(self.rider, {'bookingId': self.booking.id, 'fields': {'legacy_status': 'cancelled'}})

		self.assertEqual(response.status_code, 503)
		self.assertEqual(response.data['error'], 'store_write_failure')

	def test_strangers_cannot_touch_a_booking(self):
		response = self._mutate(self.other_rider, {
			'bookingId': self.booking.id,
			'fields': {'legacy_status': 'cancelled'},
		})

		self.assertEqual(response.status_code, 403)

	def test_riders_cannot_act_as_chauffeurs(self):
		response = self._mutate(self.rider, {
			'bookingId': self.booking.id,
			'fields': {'chauffeur_stage_flag': 'driver_accepted'},
			'actorRole': 'chauffeur',
		})

		self.assertEqual(response.status_code, 403)

	def test_parties_cannot_forge_a_payment(self):
		store.advance(self.booking.id, 'driver_accepted', 'chauffeur', actor=self.chauffeur)
		store.advance(self.booking.id, 'offer_sent', 'chauffeur', actor=self.chauffeur, fields={'accepted_price_cents': 2500})
		store.advance(self.booking.id, 'offer_accepted', 'rider', actor=self.rider)

		forged = self._mutate(self.rider, {
			'bookingId': self.booking.id,
			'fields': {'paid_at': '2026-01-01T00:00:00Z', 'payment_provider_reference': 'pi_fake'},
		})
		flagged = self._mutate(self.rider, {
			'bookingId': self.booking.id,
			'fields': {'rider_stage_flag': 'payment_confirmed'},
		})
		as_system = self._mutate(self.operator, {
			'bookingId': self.booking.id,
			'fields': {'rider_stage_flag': 'payment_confirmed'},
			'actorRole': 'system',
		})

		self.assertEqual(forged.status_code, 400)
		self.assertEqual(forged.data['error'], 'invalid_field')
		self.assertEqual(flagged.status_code, 403)
		self.assertEqual(flagged.data['error'], 'transition_not_permitted')
		self.assertEqual(as_system.status_code, 403)

		result = process_payment_event(PaymentEvent(
			provider_reference='pi_real',
			booking_identifier=str(self.booking.id),
			amount_cents=3378,
			currency='USD',
		))
		self.booking.refresh_from_db()
		self.assertEqual(result.outcome, Outcome.RECONCILED)
		self.assertEqual(self.booking.payment_provider_reference, 'pi_real')

	def test_unrelated_chauffeur_cannot_cancel_an_open_request(self):
		response = self._mutate(self.chauffeur, {
			'bookingId': self.booking.id,
			'fields': {'legacy_status': 'cancelled'},
		})

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['error'], 'transition_not_permitted')
		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.chauffeur)
		self.assertEqual(store.get_current(self.booking.id).stage, 'pending')

	def test_unrelated_chauffeur_cannot_advance_a_claimed_booking(self):
		other = User.objects.create_user(username='other_chauffeur', password='pass1234', role=User.CHAUFFEUR)
		store.advance(self.booking.id, 'driver_accepted', 'chauffeur', actor=self.chauffeur)

		request = self.factory.post('/lifecycle/%d/advance/' % self.booking.id, {'stage': 'cancelled'}, format='json')
		force_authenticate(request, user=other)
		response = BookingAdvanceView.as_view()(request, booking_id=self.booking.id)

		self.assertEqual(response.status_code, 403)
		self.assertEqual(store.get_current(self.booking.id).stage, 'driver_accepted')

	def test_detail_and_history(self):
		store.advance(self.booking.id, 'driver_accepted', 'chauffeur', actor=self.chauffeur)

		request = self.factory.get('/lifecycle/%d/' % self.booking.id)
		force_authenticate(request, user=self.rider)
		detail = BookingDetailView.as_view()(request, booking_id=self.booking.id)

		first_id = BookingStatusHistory.objects.filter(booking=self.booking).order_by('id').first().id
		request = self.factory.get('/lifecycle/%d/history' % self.booking.id, {'after': first_id})
		force_authenticate(request, user=self.rider)
		history = BookingHistoryView.as_view()(request, booking_id=self.booking.id)

		self.assertEqual(detail.status_code, 200)
		self.assertEqual(detail.data['stage'], 'driver_accepted')
		self.assertEqual(history.status_code, 200)
		self.assertEqual(history.data['count'], 1)
		self.assertEqual(history.data['entries'][0]['recorded_stage'], 'driver_accepted')

	def test_history_rejects_a_bad_cursor(self):
		request = self.factory.get('/lifecycle/%d/history' % self.booking.id, {'after': 'yesterday'})
		force_authenticate(request, user=self.rider)
		response = BookingHistoryView.as_view()(request, booking_id=self.booking.id)

		self.assertEqual(response.status_code, 400)

	def test_advance_endpoint(self):
		request = self.factory.post('/lifecycle/%d/advance/' % self.booking.id, {
			'stage': 'offer_sent',
			'fields': {'accepted_price_cents': 2800},
		}, format='json')
		force_authenticate(request, user=self.chauffeur)
		response = BookingAdvanceView.as_view()(request, booking_id=self.booking.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['stage'], 'offer_sent')
		self.assertEqual(response.data['booking']['accepted_price_cents'], 2800)
		self.assertEqual(response.data['status_text']['primary'], 'Offer Sent')

	def test_legacy_mutate_is_for_operators_only(self):
		body = {'bookingId': self.booking.id, 'fields': {'ride_stage': 'completed'}}

		denied = self._mutate(self.rider, body, view=LegacyMutateView)
		allowed = self._mutate(self.operator, body, view=LegacyMutateView)

		self.assertEqual(denied.status_code, 403)
		self.assertEqual(allowed.status_code, 200)
		self.assertEqual(allowed.data['stage'], 'completed')
		entry = BookingStatusHistory.objects.filter(booking=self.booking).last()
		self.assertTrue(entry.metadata['legacy_passthrough'])


class AuditBookingStagesCommandTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.booking = store.create_booking(rider=self.rider)
		Booking.objects.filter(pk=self.booking.pk).update(ride_stage='completed', legacy_status='cancelled')

	def test_reports_without_fixing(self):
		out = StringIO()
		call_command('audit_booking_stages', stdout=out)

		self.booking.refresh_from_db()
		self.assertIn('contradictory terminal flags completed, cancelled', out.getvalue())
		self.assertIn('1 stale cached stage(s)', out.getvalue())
		self.assertEqual(self.booking.canonical_stage, 'pending')

	def test_fix_refreshes_the_cache(self):
		call_command('audit_booking_stages', fix=True, stdout=StringIO())

		self.booking.refresh_from_db()
		self.assertEqual(self.booking.canonical_stage, 'completed')
		self.assertEqual(self.booking.legacy_status, 'cancelled')
