from rest_framework import serializers


class PricingQuerySerializer(serializers.Serializer):
    baseEstimateCents = serializers.IntegerField(min_value=0, max_value=100_000_000)


class ReconcileQuerySerializer(serializers.Serializer):
    reference = serializers.CharField(max_length=255)
