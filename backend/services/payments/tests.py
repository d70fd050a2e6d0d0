from fractions import Fraction
from unittest.mock import patch

from django.db import DatabaseError, IntegrityError
from django.test import SimpleTestCase, TestCase, override_settings

from accounts.models import User
from bookings.models import Booking, BookingStatusHistory
from services.lifecycle.exceptions import StoreWriteError
from services.lifecycle.stages import CanonicalStage
from services.lifecycle.status_resolver import resolve_stage
from .events import PaymentEvent
from .exceptions import InvalidAmountError, MalformedPaymentEventError
from .pricing import compute_breakdown, format_breakdown, gross_up, net_after_card_fee
from .reconciler import FailureReason, Outcome, process_payment_event, reconcile_reference


class PricingTests(SimpleTestCase):
	def test_worked_example(self):
		breakdown = compute_breakdown(2500)

		self.assertEqual(breakdown.dispatcher_fee_cents, 500)
		self.assertEqual(breakdown.app_fee_cents, 250)
		self.assertEqual(breakdown.subtotal_cents, 3250)
		self.assertEqual(breakdown.total_cents, 3378)
		self.assertEqual(breakdown.card_fee_cents, 128)

	def test_fees_round_half_up_independently(self):
		breakdown = compute_breakdown(25)

		self.assertEqual(breakdown.dispatcher_fee_cents, 5)
		self.assertEqual(breakdown.app_fee_cents, 3)
		self.assertEqual(breakdown.subtotal_cents, 33)

	def test_total_is_the_smallest_amount_that_covers_the_subtotal(self):
		rate, fixed = Fraction('0.029'), 30
		for base in range(0, 50000, 97):
			breakdown = compute_breakdown(base)
			total, subtotal = breakdown.total_cents, breakdown.subtotal_cents

			self.assertGreaterEqual(total * (1 - rate) - fixed, subtotal, base)
			self.assertLess((total - 1) * (1 - rate) - fixed, subtotal, base)
			self.assertGreaterEqual(net_after_card_fee(total), subtotal, base)
			self.assertEqual(breakdown.card_fee_cents, total - subtotal)

	@override_settings(PRICING={
		'DISPATCHER_FEE_RATE': '0', 'APP_FEE_RATE': '0', 'CARD_FEE_RATE': '0.05', 'CARD_FEE_FIXED_CENTS': 0,
	})
	def test_rates_come_from_settings(self):
		self.assertEqual(compute_breakdown(950).total_cents, 1000)
		self.assertEqual(gross_up(951), 1002)

	def test_rejects_bad_amounts(self):
		for value in (-1, 12.5, '2500', None, True):
			with self.assertRaises(InvalidAmountError):
				compute_breakdown(value)

	def test_format_breakdown(self):
		formatted = format_breakdown(compute_breakdown(2500))

		self.assertEqual(formatted['total'], '$33.78')
		self.assertEqual(formatted['cardFee'], '$1.28')
		self.assertEqual(formatted['baseEstimate'], '$25.00')
		self.assertEqual(formatted['totalCents'], 3378)


class PaymentEventTests(SimpleTestCase):
	def test_flat_payload(self):
		event = PaymentEvent.from_payload({
			'eventType': 'payment.succeeded',
			'providerReference': 'pi_123',
			'bookingIdentifier': 42,
			'amountCents': 3378,
			'currency': 'usd',
		})

		self.assertEqual(event.provider_reference, 'pi_123')
		self.assertEqual(event.booking_identifier, '42')
		self.assertEqual(event.currency, 'USD')
		self.assertTrue(event.is_payment_success)

	def test_stripe_payment_intent_event(self):
		event = PaymentEvent.from_payload({
			'type': 'payment_intent.succeeded',
			'data': {'object': {
				'id': 'pi_456',
				'object': 'payment_intent',
				'amount_received': 3378,
				'currency': 'usd',
				'metadata': {'booking_code': 'BK-ABCD1234'},
			}},
		})

		self.assertEqual(event.provider_reference, 'pi_456')
		self.assertEqual(event.booking_identifier, 'BK-ABCD1234')
		self.assertEqual(event.amount_cents, 3378)

	def test_checkout_session_uses_its_payment_intent(self):
		event = PaymentEvent.from_payload({
			'type': 'checkout.session.completed',
			'data': {'object': {
				'id': 'cs_789',
				'payment_intent': 'pi_789',
				'amount_total': 1000,
				'currency': 'usd',
				'metadata': {'booking_id': '7'},
			}},
		})

		self.assertEqual(event.provider_reference, 'pi_789')
		self.assertEqual(event.booking_identifier, '7')

	def test_malformed_payloads(self):
		bad = [
			[],
			{'bookingIdentifier': 1},
			{'providerReference': 'pi_1'},
			{'providerReference': 'pi_1', 'bookingIdentifier': 1, 'amountCents': -5},
			{'providerReference': 'pi_1', 'bookingIdentifier': 1, 'amountCents': '12'},
		]
		for payload in bad:
			with self.assertRaises(MalformedPaymentEventError):
				PaymentEvent.from_payload(payload)


class PaymentReconcilerTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.booking = Booking.objects.create(
			rider=self.rider,
			legacy_status='payment_pending',
			rider_stage_flag='offer_accepted',
			payment_confirmation_stage='waiting_for_payment',
			quoted_price_cents=2500,
			accepted_price_cents=2500,
			canonical_stage=CanonicalStage.OFFER_ACCEPTED,
		)

	def _event(self, reference='pi_abc', booking=None, amount=3378):
		return PaymentEvent(
			provider_reference=reference,
			booking_identifier=str((booking or self.booking).pk),
			amount_cents=amount,
			currency='USD',
		)

	def _history_count(self, booking=None):
		return BookingStatusHistory.objects.filter(booking=booking or self.booking).count()

	def test_first_delivery_marks_booking_paid(self):
		result = process_payment_event(self._event())

		self.booking.refresh_from_db()
		entry = BookingStatusHistory.objects.get(booking=self.booking)

		self.assertEqual(result.outcome, Outcome.RECONCILED)
		self.assertIsNotNone(self.booking.paid_at)
		self.assertEqual(self.booking.payment_provider_reference, 'pi_abc')
		self.assertEqual(self.booking.paid_amount_cents, 3378)
		self.assertEqual(resolve_stage(self.booking), CanonicalStage.PAYMENT_CONFIRMED)
		self.assertEqual(entry.recorded_stage, CanonicalStage.PAYMENT_CONFIRMED)
		self.assertEqual(entry.actor_role, 'system')
		self.assertNotIn('amount_mismatch', entry.metadata)

	def test_duplicate_delivery_is_ignored(self):
		first = process_payment_event(self._event())
		with self.assertLogs('services.payments.reconciler', level='INFO') as logs:
			second = process_payment_event(self._event())

		self.assertEqual(first.outcome, Outcome.RECONCILED)
		self.assertEqual(second.outcome, Outcome.DUPLICATE_IGNORED)
		self.assertTrue(second.ok)
		self.assertEqual(self._history_count(), 1)
		self.assertIn('Duplicate payment event', logs.output[0])

	def test_second_reference_for_a_paid_booking_is_ignored(self):
		process_payment_event(self._event('pi_first'))
		result = process_payment_event(self._event('pi_second'))

		self.booking.refresh_from_db()
		self.assertEqual(result.outcome, Outcome.DUPLICATE_IGNORED)
		self.assertEqual(self.booking.payment_provider_reference, 'pi_first')
		self.assertEqual(self._history_count(), 1)

	def test_reference_already_used_by_another_booking(self):
		other = Booking.objects.create(
			rider=self.rider,
			legacy_status='payment_pending',
			accepted_price_cents=2500,
			quoted_price_cents=2500,
		)
		process_payment_event(self._event('pi_shared'))
		result = process_payment_event(self._event('pi_shared', booking=other))

		self.assertEqual(result.outcome, Outcome.FAILED)
		self.assertEqual(result.reason, FailureReason.REFERENCE_CONFLICT)
		self.assertEqual(self._history_count(other), 0)

	def test_lookup_by_booking_code(self):
		event = PaymentEvent(provider_reference='pi_code', booking_identifier=self.booking.booking_code, amount_cents=3378)
		self.assertEqual(process_payment_event(event).outcome, Outcome.RECONCILED)

	def test_unknown_booking(self):
		event = PaymentEvent(provider_reference='pi_x', booking_identifier='999999')
		result = process_payment_event(event)

		self.assertEqual(result.outcome, Outcome.FAILED)
		self.assertEqual(result.reason, FailureReason.NOT_FOUND)

	def test_payment_for_a_booking_not_awaiting_payment(self):
		Booking.objects.filter(pk=self.booking.pk).update(
			legacy_status='pending', rider_stage_flag=None, payment_confirmation_stage=None,
		)

		with self.assertLogs('services.payments.reconciler', level='ERROR'):
			result = process_payment_event(self._event())

		self.booking.refresh_from_db()
		self.assertEqual(result.reason, FailureReason.INVALID_TRANSITION)
		self.assertIsNone(self.booking.paid_at)
		self.assertEqual(self._history_count(), 0)

	def test_amount_mismatch_is_recorded_not_rejected(self):
		with self.assertLogs('services.payments.reconciler', level='WARNING'):
			result = process_payment_event(self._event(amount=3000))

		entry = BookingStatusHistory.objects.get(booking=self.booking)
		self.assertEqual(result.outcome, Outcome.RECONCILED)
		self.assertTrue(entry.metadata['amount_mismatch'])
		self.assertEqual(entry.metadata['expected_amount_cents'], 3378)

	def test_unique_constraint_race_counts_as_duplicate(self):
		with patch('services.payments.reconciler.commit_change', side_effect=IntegrityError('unique')):
			result = process_payment_event(self._event())

		self.assertEqual(result.outcome, Outcome.DUPLICATE_IGNORED)

	def test_store_failure_is_raised_for_retry(self):
		with patch('services.payments.reconciler.commit_change', side_effect=DatabaseError('gone')):
			with self.assertRaises(StoreWriteError):
				process_payment_event(self._event())

		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.paid_at)

	def test_non_payment_events_are_not_applied(self):
		event = PaymentEvent(provider_reference='pi_r', booking_identifier=str(self.booking.pk), event_type='charge.refunded')
		result = process_payment_event(event)

		self.assertEqual(result.reason, FailureReason.UNSUPPORTED_EVENT)

	@patch('services.payments.reconciler.gateway.fetch_payment')
	def test_reconcile_known_reference_skips_stripe(self, mock_fetch):
		process_payment_event(self._event('pi_known'))

		self.assertTrue(reconcile_reference('pi_known'))
		mock_fetch.assert_not_called()

	@patch('services.payments.reconciler.gateway.fetch_payment')
	def test_reconcile_applies_a_missed_payment(self, mock_fetch):
		mock_fetch.return_value = self._event('pi_missed')

		self.assertTrue(reconcile_reference('pi_missed'))
		self.booking.refresh_from_db()
		self.assertEqual(self.booking.payment_provider_reference, 'pi_missed')

	@patch('services.payments.reconciler.gateway.fetch_payment', return_value=None)
	def test_reconcile_unpaid_reference(self, mock_fetch):
		self.assertFalse(reconcile_reference('pi_unpaid'))
		self.assertEqual(self._history_count(), 0)
