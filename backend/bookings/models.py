import secrets

from django.db import models
from django.conf import settings

from services.lifecycle.exceptions import ImmutableRecordError
from services.lifecycle.stages import ActorRole, CanonicalStage


def generate_booking_code() -> str:
    return f"BK-{secrets.token_hex(4).upper()}"


class Booking(models.Model):
    """
    A chauffeur booking.

    The raw lifecycle columns below are an ingestion/compatibility surface
    written by several clients; the canonical stage is always derived from
    them by services.lifecycle.status_resolver. ``canonical_stage`` is only a
    cache refreshed on every store write.
    """

    booking_code = models.CharField(max_length=20, unique=True, default=generate_booking_code)

    # Parties
    rider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='rider_bookings'
    )

    chauffeur = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='chauffeur_bookings'
    )

    operator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='operated_bookings'
    )

    # Trip details
    pickup_address = models.TextField(blank=True, default='')
    dropoff_address = models.TextField(blank=True, default='')
    pickup_time = models.DateTimeField(null=True, blank=True)
    passenger_count = models.PositiveIntegerField(default=1)

    # Raw lifecycle columns
    legacy_status = models.CharField(max_length=40, null=True, blank=True)
    rider_stage_flag = models.CharField(max_length=40, null=True, blank=True)
    chauffeur_stage_flag = models.CharField(max_length=40, null=True, blank=True)
    ride_stage = models.CharField(max_length=40, null=True, blank=True)
    payment_confirmation_stage = models.CharField(max_length=40, null=True, blank=True)

    # Pricing
    quoted_price_cents = models.PositiveIntegerField(null=True, blank=True)
    accepted_price_cents = models.PositiveIntegerField(null=True, blank=True)

    # Payment; a provider reference can mark at most one booking as paid
    paid_at = models.DateTimeField(null=True, blank=True)
    payment_provider_reference = models.CharField(max_length=255, null=True, blank=True, unique=True)
    paid_amount_cents = models.PositiveIntegerField(null=True, blank=True)
    paid_currency = models.CharField(max_length=3, null=True, blank=True)

    # Cache only, never read back as ground truth
    canonical_stage = models.CharField(
        max_length=40,
        choices=CanonicalStage.choices,
        default=CanonicalStage.PENDING,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'bookings'
        ordering = ['-created_at']

    def __str__(self):
        return f"Booking {self.booking_code} - {self.rider} - {self.canonical_stage}"

    def is_party(self, user) -> bool:
        """True if ``user`` is the rider, chauffeur or operator on this booking."""
        user_id = getattr(user, 'id', None)
        if user_id is None:
            return False
        return user_id in (self.rider_id, self.chauffeur_id, self.operator_id)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Bookings are never deleted; cancel them instead")


class BookingStatusHistory(models.Model):
    """Append-only audit trail of stage changes. Creation order is authoritative."""

    booking = models.ForeignKey(
        Booking,
        on_delete=models.PROTECT,
        related_name='history'
    )

    recorded_stage = models.CharField(max_length=40, choices=CanonicalStage.choices)
    actor_role = models.CharField(max_length=20, choices=ActorRole.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    notes = models.TextField(blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'booking_status_history'
        ordering = ['id']
        verbose_name_plural = 'booking status history'

    def __str__(self):
        return f"#{self.id} {self.booking_id} -> {self.recorded_stage} ({self.actor_role})"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ImmutableRecordError("History entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("History entries cannot be deleted")
