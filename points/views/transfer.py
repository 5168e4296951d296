import logging
import uuid

from django.contrib.auth import get_user_model
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from points.exceptions import IdempotencyConflict
from points.serializers import BalanceSerializer, TransactionSerializer, TransferSerializer
from points.services import LedgerService

logger = logging.getLogger(__name__)


class TransferView(APIView):
    """
    POST /points/transfer — Send points to another user.

    Request body: {"receiver_id": <user id>, "amount": <positive integer>, "message": "<optional>"}
    An optional Idempotency-Key header (UUID) makes retries safe.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "points-transfer"

    def post(self, request, *args, **kwargs):
        serializer = TransferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        idempotency_key = request.META.get("HTTP_IDEMPOTENCY_KEY")
        if idempotency_key:
            try:
                idempotency_key = str(uuid.UUID(idempotency_key))
            except ValueError:
                return Response(
                    {"error": "Idempotency-Key must be a UUID."},
                    status=status.HTTP_400_BAD_REQUEST,
                )

        try:
            out_tx, _ = LedgerService.transfer(
                from_user_id=request.user.id,
                to_user_id=serializer.validated_data["receiver_id"],
                amount=serializer.validated_data["amount"],
                description=serializer.validated_data["message"],
                idempotency_key=idempotency_key,
            )
        except get_user_model().DoesNotExist:
            return Response(
                {"error": "Receiver not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except IdempotencyConflict as exc:
            return Response(
                {"error": str(exc), "code": exc.code},
                status=status.HTTP_409_CONFLICT,
            )
        except ValueError as exc:
            return Response(
                {"error": str(exc), "code": getattr(exc, "code", "invalid")},
                status=status.HTTP_400_BAD_REQUEST,
            )

        return Response(
            {
                "balance": BalanceSerializer(
                    LedgerService.get_balance(request.user.id)
                ).data,
                "transaction": TransactionSerializer(out_tx).data,
            },
            status=status.HTTP_200_OK,
        )
