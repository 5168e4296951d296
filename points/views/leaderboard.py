from rest_framework.response import Response
from rest_framework.views import APIView

from points.serializers import LeaderboardEntrySerializer, LeaderboardQuerySerializer
from points.services import RankingService


class LeaderboardView(APIView):
    """GET /points/leaderboard?limit=<n> — Top users by total points."""

    def get(self, request, *args, **kwargs):
        query = LeaderboardQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        entries = RankingService.leaderboard(query.validated_data.get("limit"))
        return Response(LeaderboardEntrySerializer(entries, many=True).data)


class SeasonLeaderboardView(APIView):
    """GET /points/leaderboard/season?limit=<n> — Top users by season points."""

    def get(self, request, *args, **kwargs):
        query = LeaderboardQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        entries = RankingService.season_leaderboard(query.validated_data.get("limit"))
        return Response(LeaderboardEntrySerializer(entries, many=True).data)
