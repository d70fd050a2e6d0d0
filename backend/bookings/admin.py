"""Tells what to show in the Django admin interface for the bookings app"""

from django.contrib import admin
from .models import Booking, BookingStatusHistory


class BookingStatusHistoryInline(admin.TabularInline):
    model = BookingStatusHistory
    extra = 0
    can_delete = False
    fields = ('id', 'recorded_stage', 'actor_role', 'actor', 'notes', 'metadata', 'created_at')
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    """Booking admin; lifecycle columns are changed through the API, not here"""
    list_display = ['booking_code', 'rider', 'chauffeur', 'operator', 'canonical_stage', 'paid_at', 'created_at']
    list_filter = ['canonical_stage', 'created_at']
    search_fields = ['booking_code', 'rider__username', 'chauffeur__username', 'payment_provider_reference']
    readonly_fields = ['booking_code', 'legacy_status', 'rider_stage_flag', 'chauffeur_stage_flag',
                       'ride_stage', 'payment_confirmation_stage', 'paid_at', 'payment_provider_reference',
                       'paid_amount_cents', 'paid_currency', 'canonical_stage', 'created_at', 'updated_at']
    date_hierarchy = 'created_at'
    inlines = [BookingStatusHistoryInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BookingStatusHistory)
class BookingStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ("id", "booking", "recorded_stage", "actor_role", "actor", "created_at")
    list_filter = ("recorded_stage", "actor_role")
    search_fields = ("booking__booking_code",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
