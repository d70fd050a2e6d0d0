import hashlib
import hmac
import importlib
import json
import os
import sys
import time
from unittest.mock import patch

from django.core.exceptions import ImproperlyConfigured
from django.test import TestCase, override_settings
from rest_framework.test import APIRequestFactory, force_authenticate

from accounts.models import User
from bookings.models import Booking, BookingStatusHistory
from services.lifecycle.exceptions import StoreWriteError
from services.payments.exceptions import PaymentGatewayError
from .tasks import reconcile_payment_reference_task
from .views import payment_webhook, pricing_breakdown, reconcile_payment


def stripe_signature(payload: str, secret: str) -> str:
	timestamp = int(time.time())
	signed = f"{timestamp}.{payload}".encode('utf-8')
	digest = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
	return f"t={timestamp},v1={digest}"


class PaymentWebhookTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.rider = User.objects.create_user(username='rider', password='pass1234', role=User.RIDER)
		self.booking = Booking.objects.create(
			rider=self.rider,
			legacy_status='payment_pending',
			rider_stage_flag='offer_accepted',
			quoted_price_cents=2500,
			accepted_price_cents=2500,
		)

	def _payload(self, reference='pi_hook', **overrides):
		body = {
			'eventType': 'payment.succeeded',
			'providerReference': reference,
			'bookingIdentifier': self.booking.id,
			'amountCents': 3378,
			'currency': 'usd',
		}
		body.update(overrides)
		return json.dumps(body)

	def _post(self, payload, **headers):
		request = self.factory.post('/payments/webhook', payload, content_type='application/json', **headers)
		return payment_webhook(request)

	def test_duplicate_webhook_is_acknowledged_once(self):
		first = self._post(self._payload())
		second = self._post(self._payload())

		self.assertEqual(first.status_code, 200)
		self.assertEqual(first.data['outcome'], 'reconciled')
		self.assertEqual(second.status_code, 200)
		self.assertEqual(second.data['outcome'], 'duplicate_ignored')
		self.assertEqual(BookingStatusHistory.objects.filter(booking=self.booking).count(), 1)

	def test_business_failures_still_answer_200(self):
		response = self._post(self._payload(bookingIdentifier=999999))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['outcome'], 'failed')
		self.assertEqual(response.data['reason'], 'not_found')

	def test_malformed_event(self):
		self.assertEqual(self._post(json.dumps({'currency': 'usd'})).status_code, 400)
		self.assertEqual(self._post('{not json').status_code, 400)

	def test_other_event_types_are_ignored(self):
		response = self._post(self._payload(eventType='charge.refunded'))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['outcome'], 'ignored')
		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.paid_at)

	@override_settings(STRIPE_WEBHOOK_SECRET='whsec_test')
	def test_signature_is_required_when_configured(self):
		payload = self._payload()

		missing = self._post(payload)
		wrong = self._post(payload, HTTP_STRIPE_SIGNATURE=stripe_signature(payload, 'whsec_other'))
		valid = self._post(payload, HTTP_STRIPE_SIGNATURE=stripe_signature(payload, 'whsec_test'))

		self.assertEqual(missing.status_code, 400)
		self.assertEqual(wrong.status_code, 400)
		self.assertEqual(wrong.data['error'], 'invalid_signature')
		self.assertEqual(valid.status_code, 200)
		self.assertEqual(valid.data['outcome'], 'reconciled')

	@override_settings(DEBUG=False, STRIPE_WEBHOOK_SECRET='', STRIPE_WEBHOOK_REQUIRE_SIGNATURE=True)
	def test_unsigned_events_are_refused_without_a_secret(self):
		with self.assertLogs('services.payments.gateway', level='ERROR'):
			response = self._post(self._payload())

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['error'], 'invalid_signature')
		self.booking.refresh_from_db()
		self.assertIsNone(self.booking.paid_at)
		self.assertFalse(BookingStatusHistory.objects.filter(booking=self.booking).exists())

	@patch.dict(os.environ, {'STRIPE_WEBHOOK_SECRET': ''})
	def test_production_settings_require_a_webhook_secret(self):
		importlib.reload(importlib.import_module('app_backend.settings.settings'))
		sys.modules.pop('app_backend.settings.prod', None)

		with self.assertRaises(ImproperlyConfigured):
			importlib.import_module('app_backend.settings.prod')

	@patch('payments.views.reconcile_payment_reference_task')
	@patch('payments.views.process_payment_event', side_effect=StoreWriteError('db down'))
	def test_store_failure_answers_503_and_queues_backstop(self, mock_process, mock_task):
		response = self._post(self._payload())

		self.assertEqual(response.status_code, 503)
		self.assertEqual(response.data['error'], 'store_write_failure')
		mock_task.apply_async.assert_called_once()
		self.assertEqual(mock_task.apply_async.call_args.kwargs['args'], ['pi_hook'])


class ReconcileEndpointTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.operator = User.objects.create_user(username='operator', password='pass1234', role=User.OPERATOR)

	def _get(self, query, user=None):
		request = self.factory.get('/payments/reconcile', query)
		if user is not None:
			force_authenticate(request, user=user)
		return reconcile_payment(request)

	@patch('payments.views.reconcile_reference', return_value=True)
	def test_paid_reference(self, mock_reconcile):
		response = self._get({'reference': 'pi_1'}, self.operator)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data, {'reference': 'pi_1', 'paid': True})
		mock_reconcile.assert_called_once_with('pi_1')

	@patch('payments.views.reconcile_reference', side_effect=PaymentGatewayError('timeout'))
	def test_processor_unavailable(self, mock_reconcile):
		response = self._get({'reference': 'pi_1'}, self.operator)

		self.assertEqual(response.status_code, 502)
		self.assertEqual(response.data['error'], 'processor_unavailable')

	def test_reference_is_required(self):
		self.assertEqual(self._get({}, self.operator).status_code, 400)

	def test_requires_authentication(self):
		self.assertIn(self._get({'reference': 'pi_1'}).status_code, (401, 403))

	@patch('services.payments.reconciler.reconcile_reference', return_value=True)
	def test_background_task_uses_reconcile_path(self, mock_reconcile):
		result = reconcile_payment_reference_task.apply(args=['pi_task'])

		self.assertTrue(result.get())
		mock_reconcile.assert_called_once_with('pi_task')


class PricingEndpointTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	def test_breakdown(self):
		response = pricing_breakdown(self.factory.get('/pricing/breakdown', {'baseEstimateCents': 2500}))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['subtotalCents'], 3250)
		self.assertEqual(response.data['totalCents'], 3378)
		self.assertEqual(response.data['cardFeeCents'], 128)
		self.assertEqual(response.data['formatted']['total'], '$33.78')

	def test_invalid_base(self):
		for value in ('-5', 'abc', ''):
			response = pricing_breakdown(self.factory.get('/pricing/breakdown', {'baseEstimateCents': value}))
			self.assertEqual(response.status_code, 400, value)
