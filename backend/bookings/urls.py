from django.urls import path, re_path
from . import views

app_name = 'bookings'

urlpatterns = [
    # Bookings
    path('bookings/', views.BookingCreateView.as_view(), name='create-booking'),
    path('<int:booking_id>/', views.BookingDetailView.as_view(), name='booking-detail'),
    re_path(r'^(?P<booking_id>\d+)/history/?$', views.BookingHistoryView.as_view(), name='booking-history'),
    re_path(r'^(?P<booking_id>\d+)/advance/?$', views.BookingAdvanceView.as_view(), name='advance-booking'),

    # Raw-field mutations
    re_path(r'^mutate/?$', views.LifecycleMutateView.as_view(), name='mutate'),
    re_path(r'^legacy/mutate/?$', views.LegacyMutateView.as_view(), name='legacy-mutate'),
]
