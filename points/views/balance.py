import logging

from rest_framework.response import Response
from rest_framework.views import APIView

from points.serializers import BalanceSerializer, PointStatsSerializer
from points.services import LedgerService, RankingService

logger = logging.getLogger(__name__)


class BalanceView(APIView):
    """GET /points/balance — Current point balance of the caller."""

    def get(self, request, *args, **kwargs):
        balance = LedgerService.get_balance(request.user.id)
        return Response(BalanceSerializer(balance).data)


class PointStatsView(APIView):
    """GET /points/stats — Balance with on-demand rank and earnings per source."""

    def get(self, request, *args, **kwargs):
        summary = RankingService.summary(request.user.id)
        return Response(PointStatsSerializer(summary).data)


class RankView(APIView):
    """GET /points/rank — Rank of the caller by total points."""

    def get(self, request, *args, **kwargs):
        return Response({"rank": RankingService.rank_of(request.user.id)})
