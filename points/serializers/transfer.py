from rest_framework import serializers


class TransferSerializer(serializers.Serializer):
    """Validates point transfer requests."""

    receiver_id = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)
    message = serializers.CharField(
        max_length=200, required=False, allow_blank=True, default=""
    )
