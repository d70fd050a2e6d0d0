"""Canonical booking stages and the groupings other modules rely on."""

from django.db import models


class CanonicalStage(models.TextChoices):
    PENDING = 'pending', 'Pending'
    DRIVER_ACCEPTED = 'driver_accepted', 'Driver Accepted'
    OFFER_SENT = 'offer_sent', 'Offer Sent'
    OFFER_ACCEPTED = 'offer_accepted', 'Offer Accepted'
    PAYMENT_CONFIRMED = 'payment_confirmed', 'Payment Confirmed'
    ALL_SET = 'all_set', 'All Set'
    DRIVER_HEADING_TO_PICKUP = 'driver_heading_to_pickup', 'Driver Heading To Pickup'
    DRIVER_ARRIVED_AT_PICKUP = 'driver_arrived_at_pickup', 'Driver Arrived At Pickup'
    PASSENGER_ONBOARD = 'passenger_onboard', 'Passenger Onboard'
    IN_TRANSIT = 'in_transit', 'In Transit'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'
    EXPIRED = 'expired', 'Expired'
    REFUNDED = 'refunded', 'Refunded'
    DISPUTED = 'disputed', 'Disputed'


TERMINAL_STAGES = frozenset({
    CanonicalStage.COMPLETED,
    CanonicalStage.CANCELLED,
    CanonicalStage.EXPIRED,
    CanonicalStage.REFUNDED,
    CanonicalStage.DISPUTED,
})

# Stages in which the rider has already paid.
PAID_STAGES = frozenset({
    CanonicalStage.PAYMENT_CONFIRMED,
    CanonicalStage.ALL_SET,
    CanonicalStage.DRIVER_HEADING_TO_PICKUP,
    CanonicalStage.DRIVER_ARRIVED_AT_PICKUP,
    CanonicalStage.PASSENGER_ONBOARD,
    CanonicalStage.IN_TRANSIT,
    CanonicalStage.COMPLETED,
    CanonicalStage.REFUNDED,
    CanonicalStage.DISPUTED,
})


class ActorRole(models.TextChoices):
    RIDER = 'rider', 'Rider'
    CHAUFFEUR = 'chauffeur', 'Chauffeur'
    OPERATOR = 'operator', 'Operator'
    SYSTEM = 'system', 'System'
