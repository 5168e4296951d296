import logging

from rest_framework.generics import ListAPIView, RetrieveAPIView

from points.models import PointTransaction
from points.serializers import TransactionFilterSerializer, TransactionSerializer
from points.services import LedgerService

logger = logging.getLogger(__name__)


class TransactionListView(ListAPIView):
    """
    GET /points/transactions/ — Paginated point history of the caller, newest first.

    Query params:
        - type: EARN, SPEND, TRANSFER_IN or TRANSFER_OUT
        - source: A point source such as DAILY_LOGIN or NFT_COLLECT
        - start / end: ISO datetimes bounding created_at (inclusive)
    """

    serializer_class = TransactionSerializer

    def get_queryset(self):
        filters = TransactionFilterSerializer(data=self.request.query_params)
        filters.is_valid(raise_exception=True)
        params = filters.validated_data

        return LedgerService.history_queryset(
            self.request.user.id,
            transaction_type=params.get("type"),
            source=params.get("source"),
            start=params.get("start"),
            end=params.get("end"),
        )


class TransactionDetailView(RetrieveAPIView):
    """GET /points/transactions/<id>/ — Retrieve one of the caller's transactions."""

    serializer_class = TransactionSerializer
    lookup_field = "id"

    def get_queryset(self):
        return PointTransaction.objects.filter(user_id=self.request.user.id)
