from rest_framework import serializers

from points.models import PointBalance


class BalanceSerializer(serializers.ModelSerializer):
    class Meta:
        model = PointBalance
        fields = (
            "total_points",
            "lifetime_earned",
            "lifetime_spent",
            "season_points",
            "current_rank",
        )
        read_only_fields = fields


class PointStatsSerializer(serializers.Serializer):
    """Balance with an on-demand rank and earnings per source."""

    total_points = serializers.IntegerField(read_only=True)
    lifetime_earned = serializers.IntegerField(read_only=True)
    lifetime_spent = serializers.IntegerField(read_only=True)
    season_points = serializers.IntegerField(read_only=True)
    current_rank = serializers.IntegerField(read_only=True)
    earned_by_source = serializers.DictField(
        child=serializers.IntegerField(), read_only=True
    )
