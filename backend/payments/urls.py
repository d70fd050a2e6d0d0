from django.urls import re_path
from . import views

app_name = 'payments'

urlpatterns = [
    re_path(r'^webhook/?$', views.payment_webhook, name='webhook'),
    re_path(r'^reconcile/?$', views.reconcile_payment, name='reconcile'),
]
