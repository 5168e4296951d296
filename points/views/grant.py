import logging

from django.contrib.auth import get_user_model
from rest_framework import status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from points.serializers import BalanceSerializer, GrantSerializer, TransactionSerializer
from points.services import LedgerService

logger = logging.getLogger(__name__)


class GrantPointsView(APIView):
    """
    POST /points/grant — Staff-only point grant.

    Request body: {"user_id", "amount", "source"?, "reference_id"?, "reference_type"?, "description"?}
    Grants with a reference are credited at most once.
    """

    permission_classes = [IsAdminUser]

    def post(self, request, *args, **kwargs):
        serializer = GrantSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            tx = LedgerService.earn(
                user_id=data["user_id"],
                amount=data["amount"],
                source=data["source"],
                reference_id=data.get("reference_id"),
                reference_type=data.get("reference_type"),
                description=data["description"],
            )
        except get_user_model().DoesNotExist:
            return Response(
                {"error": "User not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except ValueError as exc:
            return Response(
                {"error": str(exc), "code": getattr(exc, "code", "invalid")},
                status=status.HTTP_400_BAD_REQUEST,
            )

        logger.info(
            "Points granted by staff: staff=%s user=%s amount=%d tx=%d",
            request.user.id,
            data["user_id"],
            data["amount"],
            tx.id,
        )
        return Response(
            {
                "balance": BalanceSerializer(LedgerService.get_balance(tx.user_id)).data,
                "transaction": TransactionSerializer(tx).data,
            },
            status=status.HTTP_200_OK,
        )
