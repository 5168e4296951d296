import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.paginator import Paginator
from django.db import transaction
from django.db.models import F, Sum

from points.exceptions import (
    IdempotencyConflict,
    InsufficientBalance,
    InvalidAmount,
    SelfTransfer,
)
from points.models import TRANSFER_REFERENCE_TYPE, PointBalance, PointTransaction

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = getattr(settings, "POINTS_HISTORY_PAGE_SIZE", 20)


def _validate_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)


def _lock_balance(user_id) -> PointBalance:
    """
    Return the user's balance row locked for update, creating it if needed.

    Must be called inside an atomic block. Raises the user model's
    ``DoesNotExist`` when the user is unknown.
    """
    balance = PointBalance.objects.select_for_update().filter(user_id=user_id).first()
    if balance is not None:
        return balance

    user = get_user_model().objects.get(pk=user_id)
    PointBalance.objects.get_or_create(user=user)
    return PointBalance.objects.select_for_update().get(user_id=user_id)


def _display_name(user_id) -> str:
    user = get_user_model().objects.filter(pk=user_id).first()
    return user.get_username() if user else str(user_id)


class LedgerService:
    """
    Point ledger: keeps each user's balance consistent with the append-only
    transaction log.

    Every mutating operation runs in one database transaction and holds the
    balance row lock (select_for_update) from the idempotence check through
    the log append, so two requests for the same user never interleave.
    Transfers lock both balances in ascending user id order.
    """

    @staticmethod
    @transaction.atomic
    def earn(
        user_id: int,
        amount: int,
        source: str,
        reference_id: int = None,
        reference_type: str = None,
        description: str = None,
    ) -> PointTransaction:
        """
        Credit points to a user.

        Args:
            user_id: Id of the user being credited.
            amount: Positive integer amount.
            source: A ``PointTransaction.Source`` value.
            reference_id: Id of the originating event (optional).
            reference_type: Kind of the originating event (optional).
            description: Free text shown in the user's history.

        Returns:
            The created EARN transaction, or the transaction previously
            recorded for the same reference. The replayed row may be a SPEND
            when a spend already used this (user, reference) pair, so check
            ``transaction_type`` before treating it as a credit.

        Raises:
            InvalidAmount: If amount is not a positive integer.
            User.DoesNotExist: If the user does not exist.
        """
        _validate_amount(amount)

        balance = _lock_balance(user_id)

        existing_tx = LedgerService._find_replay(user_id, reference_id, reference_type)
        if existing_tx:
            return existing_tx

        PointBalance.objects.filter(pk=balance.pk).update(
            total_points=F("total_points") + amount,
            lifetime_earned=F("lifetime_earned") + amount,
            season_points=F("season_points") + amount,
        )
        balance.refresh_from_db()

        tx = PointTransaction.objects.create(
            user_id=user_id,
            transaction_type=PointTransaction.TransactionType.EARN,
            amount=amount,
            balance_after=balance.total_points,
            source=source,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description or "",
        )

        logger.info(
            "Points earned: user=%s amount=%d source=%s balance=%d tx=%d",
            user_id,
            amount,
            source,
            balance.total_points,
            tx.id,
        )
        return tx

    @staticmethod
    @transaction.atomic
    def spend(
        user_id: int,
        amount: int,
        source: str,
        reference_id: int = None,
        reference_type: str = None,
        description: str = None,
    ) -> PointTransaction:
        """
        Debit points from a user.

        Returns:
            The created SPEND transaction, or the transaction previously
            recorded for the same reference, which may be an EARN when an
            earn already used this (user, reference) pair.

        Raises:
            InvalidAmount: If amount is not a positive integer.
            InsufficientBalance: If the user holds fewer than ``amount`` points.
            User.DoesNotExist: If the user does not exist.
        """
        _validate_amount(amount)

        balance = _lock_balance(user_id)

        existing_tx = LedgerService._find_replay(user_id, reference_id, reference_type)
        if existing_tx:
            return existing_tx

        if not balance.has_enough_points(amount):
            logger.warning(
                "Spend rejected (insufficient balance): user=%s balance=%d amount=%d source=%s",
                user_id,
                balance.total_points,
                amount,
                source,
            )
            raise InsufficientBalance(balance.total_points, amount)

        PointBalance.objects.filter(pk=balance.pk).update(
            total_points=F("total_points") - amount,
            lifetime_spent=F("lifetime_spent") + amount,
        )
        balance.refresh_from_db()

        tx = PointTransaction.objects.create(
            user_id=user_id,
            transaction_type=PointTransaction.TransactionType.SPEND,
            amount=amount,
            balance_after=balance.total_points,
            source=source,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description or "",
        )

        logger.info(
            "Points spent: user=%s amount=%d source=%s balance=%d tx=%d",
            user_id,
            amount,
            source,
            balance.total_points,
            tx.id,
        )
        return tx

    @staticmethod
    @transaction.atomic
    def transfer(
        from_user_id: int,
        to_user_id: int,
        amount: int,
        description: str = None,
        idempotency_key: str = None,
    ) -> tuple:
        """
        Move points from one user to another.

        Only ``total_points`` moves; lifetime and season counters of both
        users are left alone so transfers cannot inflate season standings.

        Args:
            from_user_id: Sender.
            to_user_id: Receiver.
            amount: Positive integer amount.
            description: Optional message appended to both history lines.
            idempotency_key: Optional UUID key; repeating it with the same
                sender, receiver and amount returns the transfer recorded the
                first time.

        Returns:
            ``(transfer_out, transfer_in)`` transactions.

        Raises:
            InvalidAmount, SelfTransfer, InsufficientBalance,
            User.DoesNotExist.
            IdempotencyConflict: If the key belongs to a different transfer.
        """
        _validate_amount(amount)
        if from_user_id == to_user_id:
            raise SelfTransfer(from_user_id)

        # Lower user id first so concurrent opposite transfers cannot deadlock.
        locked = {uid: _lock_balance(uid) for uid in sorted((from_user_id, to_user_id))}
        sender, receiver = locked[from_user_id], locked[to_user_id]

        if idempotency_key:
            existing_tx = (
                PointTransaction.objects.select_related("counterpart")
                .filter(idempotency_key=idempotency_key)
                .first()
            )
            if existing_tx:
                # A key replays only the exact transfer it was first used for.
                if (
                    existing_tx.user_id != from_user_id
                    or existing_tx.counterpart.user_id != to_user_id
                    or existing_tx.amount != amount
                ):
                    logger.warning(
                        "Idempotency conflict: key=%s user=%s existing_tx=%d",
                        idempotency_key,
                        from_user_id,
                        existing_tx.id,
                    )
                    raise IdempotencyConflict(idempotency_key)
                logger.info(
                    "Idempotent transfer request: key=%s tx=%d",
                    idempotency_key,
                    existing_tx.id,
                )
                return existing_tx, existing_tx.counterpart

        if not sender.has_enough_points(amount):
            logger.warning(
                "Transfer rejected (insufficient balance): sender=%s receiver=%s balance=%d amount=%d",
                from_user_id,
                to_user_id,
                sender.total_points,
                amount,
            )
            raise InsufficientBalance(sender.total_points, amount)

        PointBalance.objects.filter(pk=sender.pk).update(
            total_points=F("total_points") - amount
        )
        PointBalance.objects.filter(pk=receiver.pk).update(
            total_points=F("total_points") + amount
        )
        sender.refresh_from_db()
        receiver.refresh_from_db()

        suffix = f" - {description}" if description and description.strip() else ""

        in_tx = PointTransaction.objects.create(
            user_id=to_user_id,
            transaction_type=PointTransaction.TransactionType.TRANSFER_IN,
            amount=amount,
            balance_after=receiver.total_points,
            source=PointTransaction.Source.TRANSFER,
            reference_id=from_user_id,
            reference_type=TRANSFER_REFERENCE_TYPE,
            description=f"Received from {_display_name(from_user_id)}{suffix}"[:500],
        )
        out_tx = PointTransaction.objects.create(
            user_id=from_user_id,
            transaction_type=PointTransaction.TransactionType.TRANSFER_OUT,
            amount=amount,
            balance_after=sender.total_points,
            source=PointTransaction.Source.TRANSFER,
            reference_id=to_user_id,
            reference_type=TRANSFER_REFERENCE_TYPE,
            description=f"Sent to {_display_name(to_user_id)}{suffix}"[:500],
            counterpart=in_tx,
            idempotency_key=idempotency_key,
        )

        logger.info(
            "Points transferred: sender=%s receiver=%s amount=%d sender_balance=%d "
            "receiver_balance=%d idempotency_key=%s",
            from_user_id,
            to_user_id,
            amount,
            sender.total_points,
            receiver.total_points,
            idempotency_key,
        )
        return out_tx, in_tx

    @staticmethod
    def get_balance(user_id: int) -> PointBalance:
        """Return the stored balance, or an unsaved zeroed one for new users."""
        balance = PointBalance.objects.filter(user_id=user_id).first()
        if balance is None:
            return PointBalance(user_id=user_id)
        return balance

    @staticmethod
    def has_enough_points(user_id: int, amount: int) -> bool:
        balance = PointBalance.objects.filter(user_id=user_id).first()
        return balance is not None and balance.has_enough_points(amount)

    @staticmethod
    def history_queryset(
        user_id: int,
        transaction_type: str = None,
        source: str = None,
        start=None,
        end=None,
    ):
        """Transactions of a user, newest first, narrowed by the given filters."""
        queryset = PointTransaction.objects.filter(user_id=user_id)
        if transaction_type:
            queryset = queryset.filter(transaction_type=transaction_type)
        if source:
            queryset = queryset.filter(source=source)
        if start:
            queryset = queryset.filter(created_at__gte=start)
        if end:
            queryset = queryset.filter(created_at__lte=end)
        return queryset.order_by("-created_at", "-id")

    @staticmethod
    def history(
        user_id: int,
        transaction_type: str = None,
        source: str = None,
        start=None,
        end=None,
        page: int = 1,
        page_size: int = None,
    ):
        """
        One page of a user's transaction history.

        Returns a ``django.core.paginator.Page``; out-of-range page numbers
        resolve to the last page.
        """
        queryset = LedgerService.history_queryset(
            user_id,
            transaction_type=transaction_type,
            source=source,
            start=start,
            end=end,
        )
        paginator = Paginator(queryset, page_size or HISTORY_PAGE_SIZE)
        return paginator.get_page(page)

    @staticmethod
    def earned_by_source(user_id: int) -> dict:
        rows = (
            PointTransaction.objects.filter(
                user_id=user_id,
                transaction_type=PointTransaction.TransactionType.EARN,
            )
            .values("source")
            .annotate(total=Sum("amount"))
            .order_by("source")
        )
        return {row["source"]: row["total"] for row in rows}

    @staticmethod
    def verify(user_id: int) -> dict:
        """
        Rebuild a user's totals from the transaction log and compare them
        with the stored balance.
        """
        sums = {
            row["transaction_type"]: row["total"]
            for row in PointTransaction.objects.filter(user_id=user_id)
            .values("transaction_type")
            .annotate(total=Sum("amount"))
            .order_by()
        }
        types = PointTransaction.TransactionType
        earned = sums.get(types.EARN, 0)
        spent = sums.get(types.SPEND, 0)
        expected_total = (
            earned + sums.get(types.TRANSFER_IN, 0) - spent - sums.get(types.TRANSFER_OUT, 0)
        )

        last_tx = PointTransaction.objects.filter(user_id=user_id).order_by("-id").first()
        balance = LedgerService.get_balance(user_id)

        consistent = (
            balance.total_points == expected_total
            and balance.lifetime_earned == earned
            and balance.lifetime_spent == spent
            and (last_tx is None or last_tx.balance_after == balance.total_points)
        )
        if not consistent:
            logger.warning(
                "Ledger mismatch: user=%s stored_total=%d expected_total=%d "
                "stored_earned=%d expected_earned=%d stored_spent=%d expected_spent=%d",
                user_id,
                balance.total_points,
                expected_total,
                balance.lifetime_earned,
                earned,
                balance.lifetime_spent,
                spent,
            )

        return {
            "user_id": user_id,
            "total_points": balance.total_points,
            "expected_total_points": expected_total,
            "lifetime_earned": balance.lifetime_earned,
            "expected_lifetime_earned": earned,
            "lifetime_spent": balance.lifetime_spent,
            "expected_lifetime_spent": spent,
            "consistent": consistent,
        }

    @staticmethod
    def _find_replay(user_id, reference_id, reference_type):
        if reference_id is None or reference_type is None:
            return None

        existing_tx = PointTransaction.find_by_reference(
            user_id, reference_id, reference_type
        )
        if existing_tx:
            logger.info(
                "Duplicate point event ignored: user=%s reference=%s:%s tx=%d",
                user_id,
                reference_type,
                reference_id,
                existing_tx.id,
            )
        return existing_tx
