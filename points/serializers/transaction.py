from rest_framework import serializers

from points.models import PointTransaction


class TransactionSerializer(serializers.ModelSerializer):
    """Read-only serializer for point history entries."""

    class Meta:
        model = PointTransaction
        fields = (
            "id",
            "transaction_type",
            "amount",
            "balance_after",
            "source",
            "reference_id",
            "reference_type",
            "description",
            "created_at",
        )
        read_only_fields = fields


class TransactionFilterSerializer(serializers.Serializer):
    """Validates the query string of the history endpoint."""

    type = serializers.ChoiceField(
        choices=PointTransaction.TransactionType.choices, required=False
    )
    source = serializers.ChoiceField(
        choices=PointTransaction.Source.choices, required=False
    )
    start = serializers.DateTimeField(required=False)
    end = serializers.DateTimeField(required=False)

    def to_internal_value(self, data):
        data = {key: value for key, value in data.items() if value not in ("", None)}
        for key in ("type", "source"):
            if key in data:
                data[key] = data[key].upper()
        return super().to_internal_value(data)

    def validate(self, attrs):
        start, end = attrs.get("start"), attrs.get("end")
        if start and end and start > end:
            raise serializers.ValidationError("start must not be after end.")
        return attrs
