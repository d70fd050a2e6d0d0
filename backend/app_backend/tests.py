from unittest.mock import patch

from django.test import TestCase, override_settings
from rest_framework.test import APIRequestFactory

from .views import health_check


class HealthCheckTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	def _get(self):
		return health_check(self.factory.get('/health/'))

	def test_eager_celery_is_not_pinged(self):
		with patch('app_backend.views.celery_app.control.ping') as ping:
			response = self._get()

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['services']['celery'], 'eager')
		self.assertEqual(response.data['services']['database'], 'healthy')
		ping.assert_not_called()

	@override_settings(CELERY_TASK_ALWAYS_EAGER=False)
	def test_celery_is_healthy_when_workers_answer(self):
		with patch('app_backend.views.celery_app.control.ping', return_value=[{'worker@host': {'ok': 'pong'}}]):
			response = self._get()

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['services']['celery'], 'healthy: 1 worker(s)')

	@override_settings(CELERY_TASK_ALWAYS_EAGER=False)
	def test_no_workers_is_unhealthy(self):
		with patch('app_backend.views.celery_app.control.ping', return_value=[]):
			response = self._get()

		self.assertEqual(response.status_code, 503)
		self.assertEqual(response.data['status'], 'unhealthy')
		self.assertEqual(response.data['services']['celery'], 'unhealthy: no workers responded')
