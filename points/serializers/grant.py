from rest_framework import serializers

from points.models import PointTransaction


class GrantSerializer(serializers.Serializer):
    """Validates staff point grants."""

    user_id = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)
    source = serializers.ChoiceField(
        choices=PointTransaction.Source.choices,
        default=PointTransaction.Source.ADMIN,
    )
    reference_id = serializers.IntegerField(required=False, allow_null=True)
    reference_type = serializers.CharField(
        max_length=50, required=False, allow_null=True, allow_blank=False
    )
    description = serializers.CharField(
        max_length=500, required=False, allow_blank=True, default=""
    )

    def validate(self, attrs):
        has_id = attrs.get("reference_id") is not None
        has_type = bool(attrs.get("reference_type"))
        if has_id != has_type:
            raise serializers.ValidationError(
                "reference_id and reference_type must be given together."
            )
        return attrs
