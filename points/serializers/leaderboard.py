from rest_framework import serializers


class LeaderboardQuerySerializer(serializers.Serializer):
    limit = serializers.IntegerField(min_value=1, required=False)


class LeaderboardEntrySerializer(serializers.Serializer):
    rank = serializers.IntegerField(read_only=True)
    user_id = serializers.IntegerField(read_only=True)
    username = serializers.CharField(read_only=True)
    points = serializers.IntegerField(read_only=True)
