import warnings
from unittest.mock import patch

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from accounts.models import User
from bookings.models import Booking, BookingStatusHistory
from . import store
from .exceptions import (
	BookingNotFoundError,
	ImmutableRecordError,
	InvalidFieldValueError,
	InvalidTransitionError,
	StoreWriteError,
	TransitionNotPermittedError,
	UnknownFieldError,
)
from .stages import ActorRole, CanonicalStage as S, TERMINAL_STAGES
from .status_resolver import describe_stage, resolve_stage, terminal_conflicts
from .transitions import (
	ALLOWED_TRANSITIONS,
	STAGE_FIELD_UPDATES,
	allowed_next_stages,
	is_valid_transition,
	validate_transition,
)


class StatusResolverTests(SimpleTestCase):
	def test_empty_and_missing_rows_are_pending(self):
		self.assertEqual(resolve_stage({}), S.PENDING)
		self.assertEqual(resolve_stage(None), S.PENDING)
		self.assertEqual(resolve_stage(object()), S.PENDING)

	def test_wrong_types_still_resolve(self):
		self.assertEqual(resolve_stage({'legacy_status': 123, 'accepted_price_cents': 'abc'}), S.PENDING)
		self.assertEqual(resolve_stage({'ride_stage': ['completed'], 'quoted_price_cents': True}), S.PENDING)

	def test_completed_beats_cancelled_and_logs_stale_derivation(self):
		with self.assertLogs('services.lifecycle.status_resolver', level='WARNING') as logs:
			stage = resolve_stage({'ride_stage': 'completed', 'legacy_status': 'cancelled'})

		self.assertEqual(stage, S.COMPLETED)
		self.assertIn('Stale derivation', logs.output[0])

	def test_refund_outranks_the_stale_ride_stage(self):
		self.assertEqual(resolve_stage({'legacy_status': 'refunded', 'ride_stage': 'completed'}), S.REFUNDED)
		self.assertEqual(resolve_stage({'legacy_status': 'disputed', 'ride_stage': 'completed'}), S.DISPUTED)

	def test_cancellation_aliases(self):
		for value in ('cancelled_by_driver', 'passenger_canceled', 'canceled', 'CANCELLED '):
			self.assertEqual(resolve_stage({'chauffeur_stage_flag': value}), S.CANCELLED, value)

	def test_most_advanced_ride_progress_wins(self):
		fields = {
			'rider_stage_flag': 'driver_heading_to_pickup',
			'chauffeur_stage_flag': 'driver_arrived_at_pickup',
			'ride_stage': 'in_transit',
		}
		self.assertEqual(resolve_stage(fields), S.IN_TRANSIT)

	def test_ride_progress_outranks_all_set(self):
		fields = {'legacy_status': 'all_set', 'ride_stage': 'passenger_onboard'}
		self.assertEqual(resolve_stage(fields), S.PASSENGER_ONBOARD)

	def test_payment_signals(self):
		self.assertEqual(resolve_stage({'paid_at': timezone.now()}), S.PAYMENT_CONFIRMED)
		self.assertEqual(resolve_stage({'payment_confirmation_stage': 'passenger_paid'}), S.PAYMENT_CONFIRMED)
		self.assertEqual(resolve_stage({'rider_stage_flag': 'payment_confirmed'}), S.PAYMENT_CONFIRMED)
		self.assertEqual(resolve_stage({'legacy_status': 'payment_pending'}), S.OFFER_ACCEPTED)

	def test_price_difference_means_offer_sent(self):
		self.assertEqual(resolve_stage({'quoted_price_cents': 2500, 'accepted_price_cents': 2800}), S.OFFER_SENT)
		self.assertEqual(resolve_stage({'quoted_price_cents': 2500, 'accepted_price_cents': 2500}), S.PENDING)

	def test_driver_acceptance_aliases(self):
		self.assertEqual(resolve_stage({'legacy_status': 'accepted'}), S.DRIVER_ACCEPTED)
		self.assertEqual(resolve_stage({'chauffeur_stage_flag': 'driver_assigned'}), S.DRIVER_ACCEPTED)

	def test_stage_field_updates_resolve_to_their_stage(self):
		for stage, fields in STAGE_FIELD_UPDATES.items():
			self.assertEqual(resolve_stage(fields), stage, stage)

	def test_terminal_conflicts(self):
		self.assertEqual(
			terminal_conflicts({'ride_stage': 'completed', 'legacy_status': 'cancelled'}),
			['completed', 'cancelled'],
		)
		self.assertEqual(terminal_conflicts({'legacy_status': 'cancelled'}), [])

	def test_describe_stage_uses_the_viewer_role(self):
		rider = describe_stage(S.OFFER_SENT, 'rider')
		chauffeur = describe_stage(S.OFFER_SENT, 'chauffeur')

		self.assertEqual(rider['primary'], 'Offer Received')
		self.assertEqual(chauffeur['secondary'], 'Waiting for the rider to confirm')


class TransitionTests(SimpleTestCase):
	def test_every_pair_is_gated_by_the_adjacency_map(self):
		for from_stage in S:
			for to_stage in S:
				legal = to_stage in ALLOWED_TRANSITIONS[from_stage] or (
					from_stage == to_stage and from_stage not in TERMINAL_STAGES
				)
				self.assertEqual(is_valid_transition(from_stage, to_stage), legal, (from_stage, to_stage))
				if legal:
					validate_transition(from_stage, to_stage)
				else:
					with self.assertRaises(InvalidTransitionError):
						validate_transition(from_stage, to_stage)

	def test_terminal_stages_only_allow_their_explicit_exits(self):
		self.assertEqual(allowed_next_stages(S.EXPIRED), frozenset())
		self.assertEqual(allowed_next_stages(S.COMPLETED), frozenset({S.REFUNDED, S.DISPUTED}))
		self.assertFalse(is_valid_transition(S.COMPLETED, S.COMPLETED))

	def test_unknown_values_are_never_valid(self):
		self.assertFalse(is_valid_transition('pending', 'teleported'))
		self.assertEqual(allowed_next_stages('teleported'), frozenset())

	def test_error_carries_both_stages(self):
		with self.assertRaises(InvalidTransitionError) as ctx:
			validate_transition(S.PENDING, S.COMPLETED)

		self.assertEqual(ctx.exception.from_stage, S.PENDING)
		self.assertEqual(ctx.exception.to_stage, S.COMPLETED)


class LifecycleStoreTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.chauffeur = User.objects.create_user(username='chauffeur', password='pass1234', role=User.CHAUFFEUR)
		self.operator = User.objects.create_user(username='operator', password='pass1234', role=User.OPERATOR)
		self.booking = store.create_booking(
			rider=self.rider,
			pickup_address='Union Square',
			dropoff_address='SFO Terminal 2',
			quoted_price_cents=2500,
		)

	def test_create_booking_records_first_history_entry(self):
		snapshot = store.get_current(self.booking.id)
		history = store.get_history(self.booking.id)

		self.assertEqual(snapshot.stage, S.PENDING)
		self.assertEqual(len(history), 1)
		self.assertEqual(history[0].recorded_stage, S.PENDING)
		self.assertEqual(history[0].actor_role, ActorRole.RIDER)

	def test_get_current_accepts_booking_code(self):
		snapshot = store.get_current(self.booking.booking_code)
		self.assertEqual(snapshot.booking.pk, self.booking.pk)

	def test_mutate_writes_fields_history_and_claims_booking(self):
		store.mutate(
			self.booking.id,
			{'chauffeur_stage_flag': 'driver_accepted'},
			ActorRole.CHAUFFEUR,
			actor=self.chauffeur,
			notes='On it',
		)

		self.booking.refresh_from_db()
		history = store.get_history(self.booking.id)

		self.assertEqual(self.booking.chauffeur, self.chauffeur)
		self.assertEqual(self.booking.canonical_stage, S.DRIVER_ACCEPTED)
		self.assertEqual(len(history), 2)
		self.assertEqual(history[-1].recorded_stage, S.DRIVER_ACCEPTED)
		self.assertEqual(history[-1].metadata['from_stage'], 'pending')
		self.assertEqual(history[-1].notes, 'On it')

	def test_illegal_mutation_changes_nothing(self):
		with self.assertRaises(InvalidTransitionError):
			store.mutate(self.booking.id, {'ride_stage': 'completed'}, ActorRole.CHAUFFEUR, actor=self.chauffeur)

		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.ride_stage)
		self.assertIsNone(self.booking.chauffeur)
		self.assertEqual(len(store.get_history(self.booking.id)), 1)

	def test_same_stage_edit_is_allowed_while_live(self):
		store.mutate(self.booking.id, {'quoted_price_cents': 2700}, ActorRole.OPERATOR, actor=self.operator)

		self.booking.refresh_from_db()
		self.assertEqual(self.booking.quoted_price_cents, 2700)
		self.assertEqual(len(store.get_history(self.booking.id)), 2)

	def test_unknown_and_invalid_fields_are_rejected(self):
		with self.assertRaises(UnknownFieldError):
			store.mutate(self.booking.id, {'canonical_stage': 'completed'}, ActorRole.OPERATOR)
		with self.assertRaises(InvalidFieldValueError):
			store.mutate(self.booking.id, {'quoted_price_cents': 'lots'}, ActorRole.OPERATOR)

	def test_missing_booking(self):
		with self.assertRaises(BookingNotFoundError):
			store.mutate(999999, {'legacy_status': 'cancelled'}, ActorRole.OPERATOR)
		with self.assertRaises(BookingNotFoundError):
			store.get_current('BK-NOPE')
		with self.assertRaises(BookingNotFoundError):
			store.get_history(999999)

	def test_failed_history_write_rolls_back_the_state_change(self):
		with patch.object(BookingStatusHistory.objects, 'create', side_effect=DatabaseError('disk full')):
			with self.assertRaises(StoreWriteError):
				store.mutate(
					self.booking.id,
					{'chauffeur_stage_flag': 'driver_accepted'},
					ActorRole.CHAUFFEUR,
					actor=self.chauffeur,
				)

		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.chauffeur_stage_flag)
		self.assertEqual(self.booking.canonical_stage, S.PENDING)

	def test_history_and_bookings_are_immutable(self):
		entry = store.get_history(self.booking.id)[0]

		entry.notes = 'rewritten'
		with self.assertRaises(ImmutableRecordError):
			entry.save()
		with self.assertRaises(ImmutableRecordError):
			entry.delete()
		with self.assertRaises(ImmutableRecordError):
			self.booking.delete()

	def test_history_cursor(self):
		store.advance(self.booking.id, S.DRIVER_ACCEPTED, ActorRole.CHAUFFEUR, actor=self.chauffeur)
		store.advance(self.booking.id, S.CANCELLED, ActorRole.RIDER, actor=self.rider)

		history = store.get_history(self.booking.id)
		later = store.get_history(self.booking.id, after_id=history[0].id)

		self.assertEqual([e.recorded_stage for e in history], [S.PENDING, S.DRIVER_ACCEPTED, S.CANCELLED])
		self.assertEqual([e.id for e in later], [e.id for e in history[1:]])

	def test_advance_walks_the_happy_path(self):
		path = [
			(S.DRIVER_ACCEPTED, ActorRole.CHAUFFEUR, {}),
			(S.OFFER_SENT, ActorRole.CHAUFFEUR, {'accepted_price_cents': 2800}),
			(S.OFFER_ACCEPTED, ActorRole.RIDER, {}),
			(S.PAYMENT_CONFIRMED, ActorRole.SYSTEM, {}),
			(S.ALL_SET, ActorRole.CHAUFFEUR, {}),
			(S.DRIVER_HEADING_TO_PICKUP, ActorRole.CHAUFFEUR, {}),
			(S.DRIVER_ARRIVED_AT_PICKUP, ActorRole.CHAUFFEUR, {}),
			(S.PASSENGER_ONBOARD, ActorRole.CHAUFFEUR, {}),
			(S.IN_TRANSIT, ActorRole.CHAUFFEUR, {}),
			(S.COMPLETED, ActorRole.CHAUFFEUR, {}),
			(S.REFUNDED, ActorRole.OPERATOR, {}),
		]
		for stage, role, fields in path:
			actor = {ActorRole.RIDER: self.rider, ActorRole.CHAUFFEUR: self.chauffeur}.get(role, self.operator)
			store.advance(self.booking.id, stage, role, actor=actor, fields=fields)
			self.assertEqual(store.get_current(self.booking.id).stage, stage)

		self.assertEqual(len(store.get_history(self.booking.id)), len(path) + 1)

	def test_advance_rejects_skipping_stages(self):
		with self.assertRaises(InvalidTransitionError):
			store.advance(self.booking.id, S.ALL_SET, ActorRole.OPERATOR, actor=self.operator)

	def _accept_offer(self):
		store.advance(self.booking.id, S.DRIVER_ACCEPTED, ActorRole.CHAUFFEUR, actor=self.chauffeur)
		store.advance(
			self.booking.id, S.OFFER_SENT, ActorRole.CHAUFFEUR, actor=self.chauffeur,
			fields={'accepted_price_cents': 2800},
		)
		store.advance(self.booking.id, S.OFFER_ACCEPTED, ActorRole.RIDER, actor=self.rider)

	def test_payment_fields_are_not_writable_by_callers(self):
		self._accept_offer()

		with self.assertRaises(UnknownFieldError):
			store.mutate(
				self.booking.id,
				{'paid_at': timezone.now(), 'payment_provider_reference': 'pi_fake'},
				ActorRole.RIDER,
				actor=self.rider,
			)
		with self.assertRaises(UnknownFieldError):
			store.advance(
				self.booking.id, S.CANCELLED, ActorRole.RIDER, actor=self.rider,
				fields={'paid_amount_cents': 2800},
			)

		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.paid_at)
		self.assertIsNone(self.booking.payment_provider_reference)

	def test_only_the_system_confirms_payment(self):
		self._accept_offer()

		with self.assertRaises(TransitionNotPermittedError):
			store.advance(self.booking.id, S.PAYMENT_CONFIRMED, ActorRole.OPERATOR, actor=self.operator)
		with self.assertRaises(TransitionNotPermittedError):
			store.mutate(
				self.booking.id, {'rider_stage_flag': 'payment_confirmed'}, ActorRole.RIDER, actor=self.rider,
			)

		self.assertEqual(store.get_current(self.booking.id).stage, S.OFFER_ACCEPTED)
		store.advance(self.booking.id, S.PAYMENT_CONFIRMED, ActorRole.SYSTEM)
		self.assertEqual(store.get_current(self.booking.id).stage, S.PAYMENT_CONFIRMED)

	def test_unclaimed_booking_only_takes_claiming_moves(self):
		with self.assertRaises(TransitionNotPermittedError):
			store.mutate(self.booking.id, {'legacy_status': 'cancelled'}, ActorRole.CHAUFFEUR, actor=self.chauffeur)
		with self.assertRaises(TransitionNotPermittedError):
			store.mutate(self.booking.id, {'quoted_price_cents': 100}, ActorRole.CHAUFFEUR, actor=self.chauffeur)

		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.chauffeur)
		self.assertEqual(self.booking.legacy_status, 'pending')
		self.assertEqual(self.booking.quoted_price_cents, 2500)

		store.advance(
			self.booking.id, S.OFFER_SENT, ActorRole.CHAUFFEUR, actor=self.chauffeur,
			fields={'accepted_price_cents': 2600},
		)
		self.booking.refresh_from_db()
		self.assertEqual(self.booking.chauffeur, self.chauffeur)

	def test_legacy_passthrough_skips_validation_but_is_tagged(self):
		with warnings.catch_warnings(record=True) as caught:
			warnings.simplefilter('always')
			with self.assertLogs('services.lifecycle.store', level='WARNING'):
				store.apply_legacy_fields(
					self.booking.id, {'ride_stage': 'completed'}, ActorRole.OPERATOR, actor=self.operator,
				)

		self.assertTrue(any(issubclass(w.category, DeprecationWarning) for w in caught))
		self.assertEqual(store.get_current(self.booking.id).stage, S.COMPLETED)
		self.assertTrue(store.get_history(self.booking.id)[-1].metadata['legacy_passthrough'])

	def test_change_is_published_after_commit(self):
		with patch('realtime.change_feed.publish_booking_changed') as publish:
			with self.captureOnCommitCallbacks(execute=True):
				store.mutate(self.booking.id, {'legacy_status': 'cancelled'}, ActorRole.RIDER, actor=self.rider)

		publish.assert_called_once_with(self.booking.id)

	def test_reads_ignore_a_stale_cache(self):
		Booking.objects.filter(pk=self.booking.pk).update(legacy_status='expired')

		snapshot = store.get_current(self.booking.id)
		self.assertEqual(snapshot.booking.canonical_stage, S.PENDING)
		self.assertEqual(snapshot.stage, S.EXPIRED)
