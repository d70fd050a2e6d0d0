from rest_framework import serializers
from django.contrib.auth import get_user_model

from services.lifecycle.stages import ActorRole, CanonicalStage
from services.lifecycle.status_resolver import resolve_stage, describe_stage
from services.lifecycle.transitions import allowed_next_stages
from .models import Booking, BookingStatusHistory

User = get_user_model()


def _viewer_role(context) -> str:
    user = context.get('user')
    if user is None and context.get('request') is not None:
        user = context['request'].user
    return 'chauffeur' if getattr(user, 'role', None) == User.CHAUFFEUR else 'rider'


class UserBasicSerializer(serializers.ModelSerializer):
    """Minimal party info for bookings"""

    class Meta:
        model = User
        fields = ['id', 'username', 'role']


class BookingSerializer(serializers.ModelSerializer):
    """Booking with its raw lifecycle columns and the freshly resolved stage"""
    rider = UserBasicSerializer(read_only=True)
    chauffeur = UserBasicSerializer(read_only=True)
    operator = UserBasicSerializer(read_only=True)
    stage = serializers.SerializerMethodField()

    class Meta:
        model = Booking
        fields = ['id', 'booking_code', 'rider', 'chauffeur', 'operator',
                  'pickup_address', 'dropoff_address', 'pickup_time', 'passenger_count',
                  'legacy_status', 'rider_stage_flag', 'chauffeur_stage_flag', 'ride_stage',
                  'payment_confirmation_stage', 'quoted_price_cents', 'accepted_price_cents',
                  'paid_at', 'payment_provider_reference', 'paid_amount_cents', 'paid_currency',
                  'stage', 'created_at', 'updated_at']
        read_only_fields = fields

    def get_stage(self, obj):
        return resolve_stage(obj).value


class BookingSnapshotSerializer(serializers.Serializer):
    """Serializes a lifecycle store snapshot for REST responses and the change feed"""
    booking = BookingSerializer()
    stage = serializers.SerializerMethodField()
    status_text = serializers.SerializerMethodField()
    allowed_next_stages = serializers.SerializerMethodField()

    def get_stage(self, obj):
        return obj.stage.value

    def get_status_text(self, obj):
        return describe_stage(obj.stage, _viewer_role(self.context))

    def get_allowed_next_stages(self, obj):
        return sorted(stage.value for stage in allowed_next_stages(obj.stage))


class HistoryEntrySerializer(serializers.ModelSerializer):
    actor = serializers.PrimaryKeyRelatedField(read_only=True)

    class Meta:
        model = BookingStatusHistory
        fields = ['id', 'recorded_stage', 'actor_role', 'actor', 'notes', 'metadata', 'created_at']
        read_only_fields = fields


class BookingCreateSerializer(serializers.Serializer):
    """Serializer for creating bookings"""
    pickup_address = serializers.CharField(required=False, allow_blank=True, default='')
    dropoff_address = serializers.CharField(required=False, allow_blank=True, default='')
    pickup_time = serializers.DateTimeField(required=False, allow_null=True, default=None)
    passenger_count = serializers.IntegerField(required=False, min_value=1, default=1)
    quoted_price_cents = serializers.IntegerField(required=False, min_value=0, allow_null=True, default=None)
    chauffeur = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(role=User.CHAUFFEUR), required=False, allow_null=True, default=None
    )
    operator = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(role=User.OPERATOR), required=False, allow_null=True, default=None
    )
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class MutateRequestSerializer(serializers.Serializer):
    """Body of POST /lifecycle/mutate"""
    bookingId = serializers.IntegerField(min_value=1)
    actorRole = serializers.ChoiceField(choices=ActorRole.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    metadata = serializers.DictField(required=False, default=dict)

    def get_fields(self):
        # "fields" would shadow Serializer.fields as a class attribute
        declared = super().get_fields()
        declared["fields"] = serializers.DictField(allow_empty=False)
        return declared


class AdvanceRequestSerializer(serializers.Serializer):
    """Body of POST /lifecycle/<id>/advance/"""
    stage = serializers.ChoiceField(choices=CanonicalStage.choices)
    actorRole = serializers.ChoiceField(choices=ActorRole.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def get_fields(self):
        declared = super().get_fields()
        declared["fields"] = serializers.DictField(required=False, default=dict)
        return declared
