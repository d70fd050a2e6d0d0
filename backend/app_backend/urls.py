from django.contrib import admin
from django.urls import path, include

from payments.views import pricing_breakdown
from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Booking lifecycle (at /lifecycle/)
    path('lifecycle/', include('bookings.urls')),   # bookings.urls have create, detail, history, mutate endpoints

    # Payments (at /payments/)
    path('payments/', include('payments.urls')),    # webhook and reconcile poll

    # Pricing
    path('pricing/breakdown', pricing_breakdown, name='pricing-breakdown'),
]
