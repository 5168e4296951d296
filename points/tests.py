import random
import re
import uuid
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase
from django.test.utils import CaptureQueriesContext
from django.utils import timezone
from rest_framework.test import APIClient

from points.exceptions import (
    IdempotencyConflict,
    InsufficientBalance,
    InvalidAmount,
    SelfTransfer,
)
from points.middleware import mask_sensitive_data
from points.models import TRANSFER_REFERENCE_TYPE, PointBalance, PointTransaction
from points.services import LedgerService, RankingService

User = get_user_model()
Source = PointTransaction.Source
TxType = PointTransaction.TransactionType


def make_user(username, **extra):
    return User.objects.create_user(username=username, password="pass-1234", **extra)


# ============================================================
# Model Tests
# ============================================================


class PointBalanceModelTest(TestCase):
    def setUp(self):
        self.user = make_user("alice")

    def test_create_balance_defaults(self):
        balance = PointBalance.objects.create(user=self.user)
        self.assertEqual(balance.total_points, 0)
        self.assertEqual(balance.lifetime_earned, 0)
        self.assertEqual(balance.lifetime_spent, 0)
        self.assertEqual(balance.season_points, 0)
        self.assertIsNone(balance.current_rank)
        self.assertIsNotNone(balance.created_at)

    def test_balance_str(self):
        balance = PointBalance.objects.create(user=self.user, total_points=40)
        self.assertIn("total=40", str(balance))

    def test_has_enough_points(self):
        balance = PointBalance(user=self.user, total_points=50)
        self.assertTrue(balance.has_enough_points(50))
        self.assertFalse(balance.has_enough_points(51))

    def test_negative_total_rejected_by_database(self):
        balance = PointBalance.objects.create(user=self.user)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                PointBalance.objects.filter(pk=balance.pk).update(total_points=-1)

    def test_one_balance_per_user(self):
        PointBalance.objects.create(user=self.user)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                PointBalance.objects.create(user=self.user)


class PointTransactionModelTest(TestCase):
    def setUp(self):
        self.user = make_user("alice")

    def _create(self, **overrides):
        fields = {
            "user": self.user,
            "transaction_type": TxType.EARN,
            "amount": 100,
            "balance_after": 100,
            "source": Source.NFT_COLLECT,
            "reference_id": 5,
            "reference_type": "COLLECT",
        }
        fields.update(overrides)
        return PointTransaction.objects.create(**fields)

    def test_transaction_str(self):
        tx = self._create()
        self.assertIn("EARN", str(tx))
        self.assertIn("100", str(tx))

    def test_transactions_are_immutable(self):
        tx = self._create()
        tx.description = "rewritten"
        with self.assertRaises(ValueError):
            tx.save()

    def test_duplicate_reference_rejected(self):
        self._create()
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self._create()

    def test_same_reference_allowed_for_transfers(self):
        self._create(
            transaction_type=TxType.TRANSFER_IN,
            source=Source.TRANSFER,
            reference_type=TRANSFER_REFERENCE_TYPE,
        )
        self._create(
            transaction_type=TxType.TRANSFER_IN,
            source=Source.TRANSFER,
            reference_type=TRANSFER_REFERENCE_TYPE,
        )
        self.assertEqual(PointTransaction.objects.count(), 2)

    def test_non_positive_amount_rejected_by_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self._create(amount=0, reference_id=None, reference_type=None)

    def test_find_by_reference(self):
        tx = self._create()
        self.assertEqual(PointTransaction.find_by_reference(self.user.id, 5, "COLLECT"), tx)
        self.assertIsNone(PointTransaction.find_by_reference(self.user.id, 6, "COLLECT"))

    def test_is_credit(self):
        self.assertTrue(self._create().is_credit)
        spend = self._create(transaction_type=TxType.SPEND, reference_id=None)
        self.assertFalse(spend.is_credit)


# ============================================================
# Ledger Service Tests
# ============================================================


class LedgerEarnTest(TransactionTestCase):
    def setUp(self):
        self.user = make_user("alice")

    def test_earn_success(self):
        tx = LedgerService.earn(self.user.id, 100, Source.DAILY_LOGIN)

        balance = PointBalance.objects.get(user=self.user)
        self.assertEqual(balance.total_points, 100)
        self.assertEqual(balance.lifetime_earned, 100)
        self.assertEqual(balance.season_points, 100)
        self.assertEqual(tx.transaction_type, TxType.EARN)
        self.assertEqual(tx.amount, 100)
        self.assertEqual(tx.balance_after, 100)
        self.assertEqual(tx.source, Source.DAILY_LOGIN)

    def test_earn_creates_balance_lazily(self):
        self.assertFalse(PointBalance.objects.filter(user=self.user).exists())
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        self.assertTrue(PointBalance.objects.filter(user=self.user).exists())

    def test_earn_zero_amount_raises(self):
        with self.assertRaises(InvalidAmount):
            LedgerService.earn(self.user.id, 0, Source.DAILY_LOGIN)

    def test_earn_negative_amount_raises(self):
        with self.assertRaises(InvalidAmount):
            LedgerService.earn(self.user.id, -5, Source.DAILY_LOGIN)
        self.assertFalse(PointTransaction.objects.exists())

    def test_earn_non_integer_amount_raises(self):
        with self.assertRaises(InvalidAmount):
            LedgerService.earn(self.user.id, 1.5, Source.DAILY_LOGIN)

    def test_earn_unknown_user_raises(self):
        with self.assertRaises(User.DoesNotExist):
            LedgerService.earn(999999, 10, Source.DAILY_LOGIN)
        self.assertFalse(PointBalance.objects.exists())

    def test_earn_idempotent_replay(self):
        tx1 = LedgerService.earn(
            self.user.id, 100, Source.NFT_COLLECT, reference_id=5, reference_type="COLLECT"
        )
        tx2 = LedgerService.earn(
            self.user.id, 100, Source.NFT_COLLECT, reference_id=5, reference_type="COLLECT"
        )

        self.assertEqual(tx1.id, tx2.id)
        self.assertEqual(PointTransaction.objects.filter(user=self.user).count(), 1)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 100)

    def test_same_reference_for_different_users_credits_both(self):
        bob = make_user("bob")
        LedgerService.earn(self.user.id, 50, Source.EVENT_REWARD, 1, "EVENT")
        LedgerService.earn(bob.id, 50, Source.EVENT_REWARD, 1, "EVENT")

        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 50)
        self.assertEqual(LedgerService.get_balance(bob.id).total_points, 50)

    def test_reference_requires_both_parts_for_idempotence(self):
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN, reference_id=1)
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN, reference_id=1)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 20)

    def test_earn_with_spent_reference_returns_the_spend(self):
        LedgerService.earn(self.user.id, 50, Source.DAILY_LOGIN)
        spent = LedgerService.spend(self.user.id, 20, Source.MARKETPLACE_PURCHASE, 7, "LISTING")

        tx = LedgerService.earn(self.user.id, 20, Source.MARKETPLACE_SALE, 7, "LISTING")

        self.assertEqual(tx.id, spent.id)
        self.assertEqual(tx.transaction_type, TxType.SPEND)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 30)


class LedgerSpendTest(TransactionTestCase):
    def setUp(self):
        self.user = make_user("alice")
        LedgerService.earn(self.user.id, 100, Source.DAILY_LOGIN)

    def test_spend_success(self):
        tx = LedgerService.spend(self.user.id, 30, Source.MARKETPLACE_PURCHASE)

        balance = PointBalance.objects.get(user=self.user)
        self.assertEqual(balance.total_points, 70)
        self.assertEqual(balance.lifetime_spent, 30)
        self.assertEqual(balance.lifetime_earned, 100)
        self.assertEqual(balance.season_points, 100)
        self.assertEqual(tx.transaction_type, TxType.SPEND)
        self.assertEqual(tx.balance_after, 70)

    def test_spend_entire_balance(self):
        LedgerService.spend(self.user.id, 100, Source.MARKETPLACE_PURCHASE)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 0)

    def test_spend_insufficient_balance_raises(self):
        with self.assertRaises(InsufficientBalance) as ctx:
            LedgerService.spend(self.user.id, 101, Source.MARKETPLACE_PURCHASE)

        self.assertEqual(ctx.exception.balance, 100)
        self.assertEqual(ctx.exception.code, "insufficient_balance")
        balance = PointBalance.objects.get(user=self.user)
        self.assertEqual(balance.total_points, 100)
        self.assertEqual(balance.lifetime_spent, 0)
        self.assertEqual(
            PointTransaction.objects.filter(transaction_type=TxType.SPEND).count(), 0
        )

    def test_spend_without_balance_leaves_nothing_behind(self):
        bob = make_user("bob")
        with self.assertRaises(InsufficientBalance):
            LedgerService.spend(bob.id, 1, Source.MARKETPLACE_PURCHASE)
        self.assertFalse(PointBalance.objects.filter(user=bob).exists())

    def test_spend_invalid_amount_raises(self):
        with self.assertRaises(InvalidAmount):
            LedgerService.spend(self.user.id, 0, Source.MARKETPLACE_PURCHASE)

    def test_spend_idempotent_replay(self):
        tx1 = LedgerService.spend(
            self.user.id, 40, Source.MARKETPLACE_PURCHASE, 12, "LISTING"
        )
        tx2 = LedgerService.spend(
            self.user.id, 40, Source.MARKETPLACE_PURCHASE, 12, "LISTING"
        )

        self.assertEqual(tx1.id, tx2.id)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 60)

    def test_replay_is_checked_before_sufficiency(self):
        LedgerService.spend(self.user.id, 100, Source.MARKETPLACE_PURCHASE, 3, "LISTING")
        # Balance is now 0; the replay still returns the recorded spend.
        tx = LedgerService.spend(self.user.id, 100, Source.MARKETPLACE_PURCHASE, 3, "LISTING")
        self.assertEqual(tx.amount, 100)


class LedgerScenarioTest(TransactionTestCase):
    def setUp(self):
        self.user = make_user("alice")

    def test_earn_spend_and_duplicate_reward(self):
        LedgerService.earn(self.user.id, 100, Source.DAILY_LOGIN)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 100)

        LedgerService.spend(self.user.id, 30, Source.MARKETPLACE_PURCHASE)
        balance = LedgerService.get_balance(self.user.id)
        self.assertEqual(balance.total_points, 70)
        self.assertEqual(balance.lifetime_spent, 30)

        LedgerService.earn(self.user.id, 100, Source.NFT_COLLECT, 9, "COLLECT")
        LedgerService.earn(self.user.id, 100, Source.NFT_COLLECT, 9, "COLLECT")

        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 170)
        self.assertEqual(
            PointTransaction.objects.filter(reference_id=9, reference_type="COLLECT").count(),
            1,
        )

    def test_random_sequence_matches_sum_and_never_goes_negative(self):
        rng = random.Random(42)
        expected = 0
        for _ in range(60):
            amount = rng.randint(1, 50)
            if rng.random() < 0.5:
                LedgerService.earn(self.user.id, amount, Source.GROUP_ACTIVITY)
                expected += amount
            elif amount > expected:
                with self.assertRaises(InsufficientBalance):
                    LedgerService.spend(self.user.id, amount, Source.MARKETPLACE_PURCHASE)
            else:
                LedgerService.spend(self.user.id, amount, Source.MARKETPLACE_PURCHASE)
                expected -= amount

            total = LedgerService.get_balance(self.user.id).total_points
            self.assertEqual(total, expected)
            self.assertGreaterEqual(total, 0)

        self.assertTrue(LedgerService.verify(self.user.id)["consistent"])


class LedgerTransferTest(TransactionTestCase):
    def setUp(self):
        self.alice = make_user("alice")
        self.bob = make_user("bob")
        LedgerService.earn(self.alice.id, 200, Source.DAILY_LOGIN)
        LedgerService.earn(self.bob.id, 20, Source.DAILY_LOGIN)

    def test_transfer_success(self):
        out_tx, in_tx = LedgerService.transfer(self.alice.id, self.bob.id, 50)

        alice = LedgerService.get_balance(self.alice.id)
        bob = LedgerService.get_balance(self.bob.id)
        self.assertEqual(alice.total_points, 150)
        self.assertEqual(bob.total_points, 70)

        self.assertEqual(out_tx.transaction_type, TxType.TRANSFER_OUT)
        self.assertEqual(out_tx.balance_after, 150)
        self.assertEqual(out_tx.reference_id, self.bob.id)
        self.assertEqual(out_tx.counterpart_id, in_tx.id)
        self.assertEqual(in_tx.transaction_type, TxType.TRANSFER_IN)
        self.assertEqual(in_tx.balance_after, 70)
        self.assertEqual(in_tx.reference_id, self.alice.id)
        self.assertEqual(
            PointTransaction.objects.filter(transaction_type=TxType.TRANSFER_OUT).count(), 1
        )
        self.assertEqual(
            PointTransaction.objects.filter(transaction_type=TxType.TRANSFER_IN).count(), 1
        )

    def test_transfer_leaves_lifetime_and_season_untouched(self):
        LedgerService.transfer(self.alice.id, self.bob.id, 50)

        alice = LedgerService.get_balance(self.alice.id)
        bob = LedgerService.get_balance(self.bob.id)
        self.assertEqual(alice.lifetime_spent, 0)
        self.assertEqual(alice.season_points, 200)
        self.assertEqual(bob.lifetime_earned, 20)
        self.assertEqual(bob.season_points, 20)

    def test_transfer_descriptions(self):
        out_tx, in_tx = LedgerService.transfer(
            self.alice.id, self.bob.id, 10, description="thanks for dinner"
        )
        self.assertEqual(out_tx.description, "Sent to bob - thanks for dinner")
        self.assertEqual(in_tx.description, "Received from alice - thanks for dinner")

    def test_transfer_to_new_user_creates_balance(self):
        carol = make_user("carol")
        LedgerService.transfer(self.alice.id, carol.id, 5)
        self.assertEqual(PointBalance.objects.get(user=carol).total_points, 5)

    def test_transfer_self_raises(self):
        with self.assertRaises(SelfTransfer):
            LedgerService.transfer(self.alice.id, self.alice.id, 10)

    def test_transfer_invalid_amount_raises(self):
        with self.assertRaises(InvalidAmount):
            LedgerService.transfer(self.alice.id, self.bob.id, 0)

    def test_transfer_insufficient_balance_changes_nothing(self):
        with self.assertRaises(InsufficientBalance):
            LedgerService.transfer(self.bob.id, self.alice.id, 21)

        self.assertEqual(LedgerService.get_balance(self.alice.id).total_points, 200)
        self.assertEqual(LedgerService.get_balance(self.bob.id).total_points, 20)
        self.assertFalse(
            PointTransaction.objects.filter(source=Source.TRANSFER).exists()
        )

    def test_transfer_unknown_receiver_raises(self):
        with self.assertRaises(User.DoesNotExist):
            LedgerService.transfer(self.alice.id, 999999, 10)
        self.assertEqual(LedgerService.get_balance(self.alice.id).total_points, 200)

    def test_transfer_idempotency_key(self):
        key = str(uuid.uuid4())
        out1, in1 = LedgerService.transfer(self.alice.id, self.bob.id, 25, idempotency_key=key)
        out2, in2 = LedgerService.transfer(self.alice.id, self.bob.id, 25, idempotency_key=key)

        self.assertEqual(out1.id, out2.id)
        self.assertEqual(in1.id, in2.id)
        self.assertEqual(LedgerService.get_balance(self.alice.id).total_points, 175)
        self.assertEqual(LedgerService.get_balance(self.bob.id).total_points, 45)

    def test_idempotency_key_reused_by_another_sender_raises(self):
        carol = make_user("carol")
        key = str(uuid.uuid4())
        LedgerService.transfer(self.alice.id, carol.id, 30, idempotency_key=key)

        with self.assertRaises(IdempotencyConflict) as ctx:
            LedgerService.transfer(self.bob.id, self.alice.id, 5, idempotency_key=key)

        self.assertEqual(ctx.exception.code, "idempotency_conflict")
        self.assertEqual(LedgerService.get_balance(self.alice.id).total_points, 170)
        self.assertEqual(LedgerService.get_balance(self.bob.id).total_points, 20)
        self.assertEqual(LedgerService.get_balance(carol.id).total_points, 30)
        self.assertEqual(
            PointTransaction.objects.filter(transaction_type=TxType.TRANSFER_OUT).count(), 1
        )

    def test_idempotency_key_with_different_amount_or_receiver_raises(self):
        carol = make_user("carol")
        key = str(uuid.uuid4())
        LedgerService.transfer(self.alice.id, self.bob.id, 25, idempotency_key=key)

        with self.assertRaises(IdempotencyConflict):
            LedgerService.transfer(self.alice.id, self.bob.id, 26, idempotency_key=key)
        with self.assertRaises(IdempotencyConflict):
            LedgerService.transfer(self.alice.id, carol.id, 25, idempotency_key=key)

        self.assertEqual(LedgerService.get_balance(self.alice.id).total_points, 175)
        self.assertEqual(LedgerService.get_balance(self.bob.id).total_points, 45)
        self.assertEqual(LedgerService.get_balance(carol.id).total_points, 0)

    def test_repeated_transfers_without_key_are_independent(self):
        LedgerService.transfer(self.alice.id, self.bob.id, 10)
        LedgerService.transfer(self.alice.id, self.bob.id, 10)
        self.assertEqual(LedgerService.get_balance(self.bob.id).total_points, 40)

    def test_ledger_consistent_after_transfers(self):
        LedgerService.transfer(self.alice.id, self.bob.id, 60)
        LedgerService.transfer(self.bob.id, self.alice.id, 15)
        self.assertTrue(LedgerService.verify(self.alice.id)["consistent"])
        self.assertTrue(LedgerService.verify(self.bob.id)["consistent"])


BALANCE_LOOKUP = re.compile(
    r'FROM "points_pointbalance" WHERE "points_pointbalance"\."user_id" = (\d+)'
)


class LedgerLockingTest(TransactionTestCase):
    """Order of balance row locks relative to each other and to replay checks."""

    def setUp(self):
        self.alice = make_user("alice")
        self.bob = make_user("bob")
        LedgerService.earn(self.alice.id, 100, Source.DAILY_LOGIN)
        LedgerService.earn(self.bob.id, 100, Source.DAILY_LOGIN)

    def balance_lookups(self, queries):
        """(query index, user id) for every balance row fetched by user."""
        lookups = []
        for index, query in enumerate(queries):
            match = BALANCE_LOOKUP.search(query["sql"])
            if match:
                if connection.features.has_select_for_update:
                    self.assertIn("FOR UPDATE", query["sql"])
                lookups.append((index, int(match.group(1))))
        return lookups

    def first_index(self, queries, fragment):
        return next(i for i, query in enumerate(queries) if fragment in query["sql"])

    def test_transfer_locks_lower_user_id_first(self):
        self.assertLess(self.alice.id, self.bob.id)

        with CaptureQueriesContext(connection) as ctx:
            LedgerService.transfer(
                self.bob.id, self.alice.id, 10, idempotency_key=str(uuid.uuid4())
            )

        lookups = self.balance_lookups(ctx.captured_queries)
        self.assertEqual([user_id for _, user_id in lookups], [self.alice.id, self.bob.id])

        key_lookup = self.first_index(
            ctx.captured_queries, '"points_pointtransaction"."idempotency_key" ='
        )
        self.assertLess(lookups[-1][0], key_lookup)

    def test_earn_checks_reference_after_locking(self):
        with CaptureQueriesContext(connection) as ctx:
            LedgerService.earn(self.alice.id, 10, Source.NFT_COLLECT, 7, "COLLECT")

        lookups = self.balance_lookups(ctx.captured_queries)
        reference_lookup = self.first_index(
            ctx.captured_queries, '"points_pointtransaction"."reference_type" ='
        )
        self.assertEqual([user_id for _, user_id in lookups], [self.alice.id])
        self.assertLess(lookups[0][0], reference_lookup)

    def test_spend_checks_reference_after_locking(self):
        with CaptureQueriesContext(connection) as ctx:
            LedgerService.spend(self.bob.id, 10, Source.MARKETPLACE_PURCHASE, 7, "LISTING")

        lookups = self.balance_lookups(ctx.captured_queries)
        reference_lookup = self.first_index(
            ctx.captured_queries, '"points_pointtransaction"."reference_type" ='
        )
        self.assertEqual([user_id for _, user_id in lookups], [self.bob.id])
        self.assertLess(lookups[0][0], reference_lookup)


class LedgerReadTest(TransactionTestCase):
    def setUp(self):
        self.user = make_user("alice")

    def test_get_balance_for_new_user_is_zeroed_and_not_persisted(self):
        balance = LedgerService.get_balance(self.user.id)
        self.assertEqual(balance.total_points, 0)
        self.assertIsNone(balance.current_rank)
        self.assertIsNone(balance.pk)
        self.assertFalse(PointBalance.objects.exists())

    def test_has_enough_points(self):
        self.assertFalse(LedgerService.has_enough_points(self.user.id, 1))
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        self.assertTrue(LedgerService.has_enough_points(self.user.id, 10))
        self.assertFalse(LedgerService.has_enough_points(self.user.id, 11))

    def test_history_newest_first_and_paginated(self):
        first = LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 20, Source.ACHIEVEMENT)
        last = LedgerService.spend(self.user.id, 5, Source.MARKETPLACE_PURCHASE)

        page = LedgerService.history(self.user.id, page=1, page_size=2)
        self.assertEqual(page.paginator.count, 3)
        self.assertEqual(page.object_list[0].id, last.id)
        self.assertTrue(page.has_next())

        page2 = LedgerService.history(self.user.id, page=2, page_size=2)
        self.assertEqual([tx.id for tx in page2.object_list], [first.id])

    def test_history_filters(self):
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 20, Source.ACHIEVEMENT)
        LedgerService.spend(self.user.id, 5, Source.MARKETPLACE_PURCHASE)

        earns = LedgerService.history(self.user.id, transaction_type=TxType.EARN)
        self.assertEqual(earns.paginator.count, 2)

        achievements = LedgerService.history(self.user.id, source=Source.ACHIEVEMENT)
        self.assertEqual(achievements.paginator.count, 1)

        future = timezone.now() + timedelta(hours=1)
        self.assertEqual(LedgerService.history(self.user.id, start=future).paginator.count, 0)
        self.assertEqual(LedgerService.history(self.user.id, end=future).paginator.count, 3)

    def test_history_excludes_other_users(self):
        bob = make_user("bob")
        LedgerService.earn(bob.id, 10, Source.DAILY_LOGIN)
        self.assertEqual(LedgerService.history(self.user.id).paginator.count, 0)

    def test_earned_by_source(self):
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 15, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 50, Source.ACHIEVEMENT)
        LedgerService.spend(self.user.id, 5, Source.MARKETPLACE_PURCHASE)

        self.assertEqual(
            LedgerService.earned_by_source(self.user.id),
            {"ACHIEVEMENT": 50, "DAILY_LOGIN": 25},
        )

    def test_verify_detects_tampered_balance(self):
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        PointBalance.objects.filter(user=self.user).update(total_points=99)

        report = LedgerService.verify(self.user.id)
        self.assertFalse(report["consistent"])
        self.assertEqual(report["expected_total_points"], 10)
        self.assertEqual(report["total_points"], 99)


# ============================================================
# Ranking Service Tests
# ============================================================


class RankingServiceTest(TransactionTestCase):
    def setUp(self):
        self.a = make_user("a")
        self.b = make_user("b")
        self.c = make_user("c")
        LedgerService.earn(self.a.id, 300, Source.ACHIEVEMENT)
        LedgerService.earn(self.b.id, 300, Source.ACHIEVEMENT)
        LedgerService.earn(self.c.id, 100, Source.ACHIEVEMENT)

    def _rank(self, user):
        return PointBalance.objects.get(user=user).current_rank

    def test_recalculate_all_breaks_ties_by_user_id(self):
        ranked = RankingService.recalculate_all()

        self.assertEqual(ranked, 3)
        self.assertEqual(self._rank(self.a), 1)
        self.assertEqual(self._rank(self.b), 2)
        self.assertEqual(self._rank(self.c), 3)

    def test_recalculate_all_does_not_touch_totals(self):
        RankingService.recalculate_all()
        self.assertEqual(PointBalance.objects.get(user=self.c).total_points, 100)

    def test_reset_season(self):
        LedgerService.spend(self.a.id, 50, Source.MARKETPLACE_PURCHASE)
        RankingService.recalculate_all()

        reset = RankingService.reset_season()

        self.assertEqual(reset, 3)
        a = PointBalance.objects.get(user=self.a)
        self.assertEqual(a.season_points, 0)
        self.assertIsNone(a.current_rank)
        self.assertEqual(a.total_points, 250)
        self.assertEqual(a.lifetime_earned, 300)
        self.assertEqual(a.lifetime_spent, 50)

    def test_rank_of_without_recalculation(self):
        self.assertEqual(RankingService.rank_of(self.a.id), 1)
        self.assertEqual(RankingService.rank_of(self.b.id), 1)
        self.assertEqual(RankingService.rank_of(self.c.id), 3)

    def test_rank_of_user_without_balance(self):
        d = make_user("d")
        self.assertEqual(RankingService.rank_of(d.id), 4)

    def test_leaderboard_shares_rank_on_ties(self):
        entries = RankingService.leaderboard(10)

        self.assertEqual([e["user_id"] for e in entries], [self.a.id, self.b.id, self.c.id])
        self.assertEqual([e["rank"] for e in entries], [1, 1, 3])
        self.assertEqual(entries[0]["username"], "a")

    def test_leaderboard_limit(self):
        self.assertEqual(len(RankingService.leaderboard(2)), 2)

    def test_season_leaderboard_after_reset(self):
        RankingService.reset_season()
        LedgerService.earn(self.c.id, 5, Source.DAILY_LOGIN)

        entries = RankingService.season_leaderboard(3)
        self.assertEqual(entries[0]["user_id"], self.c.id)
        self.assertEqual(entries[0]["points"], 5)
        self.assertEqual([e["rank"] for e in entries], [1, 2, 3])

    def test_summary(self):
        summary = RankingService.summary(self.c.id)
        self.assertEqual(summary["total_points"], 100)
        self.assertEqual(summary["current_rank"], 3)
        self.assertEqual(summary["earned_by_source"], {"ACHIEVEMENT": 100})


# ============================================================
# API Tests
# ============================================================


class PointsAPITestCase(TransactionTestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user = make_user("alice", email="alice@example.com")
        self.other = make_user("bob")
        self.client.force_authenticate(self.user)


class BalanceAPITest(PointsAPITestCase):
    def test_requires_authentication(self):
        response = APIClient().get("/points/balance")
        self.assertIn(response.status_code, (401, 403))

    def test_balance_for_new_user(self):
        response = self.client.get("/points/balance")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_points"], 0)
        self.assertIsNone(response.data["current_rank"])

    def test_balance_after_earning(self):
        LedgerService.earn(self.user.id, 120, Source.DAILY_LOGIN)
        response = self.client.get("/points/balance")
        self.assertEqual(response.data["total_points"], 120)
        self.assertEqual(response.data["season_points"], 120)

    def test_rank(self):
        LedgerService.earn(self.other.id, 50, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        response = self.client.get("/points/rank")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["rank"], 2)

    def test_stats(self):
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 40, Source.NFT_COLLECT, 1, "COLLECT")
        response = self.client.get("/points/stats")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_points"], 50)
        self.assertEqual(response.data["current_rank"], 1)
        self.assertEqual(
            response.data["earned_by_source"], {"DAILY_LOGIN": 10, "NFT_COLLECT": 40}
        )


class TransactionAPITest(PointsAPITestCase):
    def setUp(self):
        super().setUp()
        LedgerService.earn(self.user.id, 100, Source.DAILY_LOGIN)
        LedgerService.earn(self.user.id, 50, Source.ACHIEVEMENT)
        LedgerService.spend(self.user.id, 30, Source.MARKETPLACE_PURCHASE)
        LedgerService.earn(self.other.id, 10, Source.DAILY_LOGIN)

    def test_list_transactions(self):
        response = self.client.get("/points/transactions/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 3)
        self.assertEqual(response.data["results"][0]["transaction_type"], "SPEND")
        self.assertEqual(response.data["results"][0]["balance_after"], 120)

    def test_filter_by_type(self):
        response = self.client.get("/points/transactions/?type=earn")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 2)

    def test_filter_by_source(self):
        response = self.client.get("/points/transactions/?source=ACHIEVEMENT")
        self.assertEqual(response.data["count"], 1)

    def test_filter_by_date_range(self):
        future = (timezone.now() + timedelta(hours=1)).isoformat()
        response = self.client.get("/points/transactions/", {"start": future})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 0)

    def test_invalid_filter(self):
        response = self.client.get("/points/transactions/?type=REFUND")
        self.assertEqual(response.status_code, 400)

    def test_inverted_date_range(self):
        now = timezone.now()
        response = self.client.get(
            "/points/transactions/",
            {"start": now.isoformat(), "end": (now - timedelta(days=1)).isoformat()},
        )
        self.assertEqual(response.status_code, 400)

    def test_transaction_detail(self):
        tx = PointTransaction.objects.filter(user=self.user).first()
        response = self.client.get(f"/points/transactions/{tx.id}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["id"], tx.id)

    def test_other_users_transaction_not_found(self):
        tx = PointTransaction.objects.get(user=self.other)
        response = self.client.get(f"/points/transactions/{tx.id}/")
        self.assertEqual(response.status_code, 404)


class TransferAPITest(PointsAPITestCase):
    def setUp(self):
        super().setUp()
        LedgerService.earn(self.user.id, 100, Source.DAILY_LOGIN)

    def test_transfer_success(self):
        response = self.client.post(
            "/points/transfer",
            {"receiver_id": self.other.id, "amount": 40, "message": "hi"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"]["total_points"], 60)
        self.assertEqual(response.data["transaction"]["transaction_type"], "TRANSFER_OUT")
        self.assertEqual(LedgerService.get_balance(self.other.id).total_points, 40)

    def test_transfer_with_idempotency_key(self):
        key = str(uuid.uuid4())
        payload = {"receiver_id": self.other.id, "amount": 40}

        response1 = self.client.post(
            "/points/transfer", payload, format="json", HTTP_IDEMPOTENCY_KEY=key
        )
        response2 = self.client.post(
            "/points/transfer", payload, format="json", HTTP_IDEMPOTENCY_KEY=key
        )

        self.assertEqual(response1.status_code, 200)
        self.assertEqual(response2.status_code, 200)
        self.assertEqual(
            response1.data["transaction"]["id"], response2.data["transaction"]["id"]
        )
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 60)

    def test_idempotency_key_of_another_user_conflicts(self):
        carol = make_user("carol")
        key = str(uuid.uuid4())
        LedgerService.transfer(
            self.user.id, carol.id, 30, description="private note", idempotency_key=key
        )
        LedgerService.earn(self.other.id, 100, Source.DAILY_LOGIN)
        self.client.force_authenticate(self.other)

        response = self.client.post(
            "/points/transfer",
            {"receiver_id": self.user.id, "amount": 5},
            format="json",
            HTTP_IDEMPOTENCY_KEY=key,
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "idempotency_conflict")
        self.assertNotIn("transaction", response.data)
        self.assertNotIn("private note", response.content.decode())
        self.assertEqual(LedgerService.get_balance(self.other.id).total_points, 100)
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 70)

    def test_transfer_invalid_idempotency_key(self):
        response = self.client.post(
            "/points/transfer",
            {"receiver_id": self.other.id, "amount": 10},
            format="json",
            HTTP_IDEMPOTENCY_KEY="not-a-uuid",
        )
        self.assertEqual(response.status_code, 400)

    def test_transfer_insufficient_balance(self):
        response = self.client.post(
            "/points/transfer",
            {"receiver_id": self.other.id, "amount": 101},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "insufficient_balance")
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 100)

    def test_transfer_to_self(self):
        response = self.client.post(
            "/points/transfer",
            {"receiver_id": self.user.id, "amount": 10},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "self_transfer")

    def test_transfer_zero_amount(self):
        response = self.client.post(
            "/points/transfer",
            {"receiver_id": self.other.id, "amount": 0},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_transfer_missing_receiver(self):
        response = self.client.post("/points/transfer", {"amount": 10}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_transfer_unknown_receiver(self):
        response = self.client.post(
            "/points/transfer",
            {"receiver_id": 999999, "amount": 10},
            format="json",
        )
        self.assertEqual(response.status_code, 404)


class GrantAPITest(PointsAPITestCase):
    def setUp(self):
        super().setUp()
        self.staff = make_user("staff", is_staff=True)
        self.staff_client = APIClient()
        self.staff_client.force_authenticate(self.staff)

    def test_grant_requires_staff(self):
        response = self.client.post(
            "/points/grant", {"user_id": self.user.id, "amount": 10}, format="json"
        )
        self.assertEqual(response.status_code, 403)

    def test_grant_success(self):
        response = self.staff_client.post(
            "/points/grant",
            {"user_id": self.user.id, "amount": 500, "description": "welcome"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["transaction"]["source"], "ADMIN")
        self.assertEqual(response.data["balance"]["total_points"], 500)

    def test_grant_with_reference_is_idempotent(self):
        payload = {
            "user_id": self.user.id,
            "amount": 100,
            "source": "EVENT_REWARD",
            "reference_id": 77,
            "reference_type": "EVENT",
        }
        response1 = self.staff_client.post("/points/grant", payload, format="json")
        response2 = self.staff_client.post("/points/grant", payload, format="json")

        self.assertEqual(
            response1.data["transaction"]["id"], response2.data["transaction"]["id"]
        )
        self.assertEqual(LedgerService.get_balance(self.user.id).total_points, 100)

    def test_grant_half_reference_rejected(self):
        response = self.staff_client.post(
            "/points/grant",
            {"user_id": self.user.id, "amount": 10, "reference_id": 1},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_grant_unknown_user(self):
        response = self.staff_client.post(
            "/points/grant", {"user_id": 999999, "amount": 10}, format="json"
        )
        self.assertEqual(response.status_code, 404)


class LeaderboardAPITest(PointsAPITestCase):
    def setUp(self):
        super().setUp()
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        LedgerService.earn(self.other.id, 90, Source.DAILY_LOGIN)

    def test_leaderboard(self):
        response = self.client.get("/points/leaderboard")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[0]["username"], "bob")
        self.assertEqual(response.data[0]["rank"], 1)
        self.assertEqual(response.data[1]["rank"], 2)

    def test_leaderboard_limit(self):
        response = self.client.get("/points/leaderboard?limit=1")
        self.assertEqual(len(response.data), 1)

    def test_leaderboard_invalid_limit(self):
        response = self.client.get("/points/leaderboard?limit=0")
        self.assertEqual(response.status_code, 400)

    def test_season_leaderboard(self):
        RankingService.reset_season()
        LedgerService.earn(self.user.id, 5, Source.DAILY_LOGIN)
        response = self.client.get("/points/leaderboard/season")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[0]["username"], "alice")
        self.assertEqual(response.data[0]["points"], 5)


# ============================================================
# Middleware Tests
# ============================================================


class RequestLoggingMiddlewareTest(PointsAPITestCase):
    def test_mask_sensitive_data(self):
        masked = mask_sensitive_data('{"password": "hunter2", "amount": 5}')
        self.assertEqual(masked, '{"password": "***", "amount": 5}')

    def test_mask_email(self):
        self.assertEqual(mask_sensitive_data("mail alice@example.com"), "mail ***@example.com")

    def test_mask_authorization(self):
        masked = mask_sensitive_data('{"Authorization": "Bearer abc.def", "amount": 5}')
        self.assertEqual(masked, '{"Authorization": "***", "amount": 5}')

    def test_request_body_is_logged_masked(self):
        LedgerService.earn(self.user.id, 10, Source.DAILY_LOGIN)
        with self.assertLogs("points.middleware", level="INFO") as logs:
            self.client.post(
                "/points/transfer",
                {"receiver_id": self.other.id, "amount": 1, "token": "s3cr3t-token"},
                format="json",
            )

        output = "\n".join(logs.output)
        self.assertIn("API Request: POST /points/transfer", output)
        self.assertIn("API Response: POST /points/transfer", output)
        self.assertNotIn("s3cr3t-token", output)


# ============================================================
# Celery Task Tests
# ============================================================


class CeleryTaskTest(TransactionTestCase):
    def setUp(self):
        self.a = make_user("a")
        self.b = make_user("b")
        LedgerService.earn(self.a.id, 10, Source.DAILY_LOGIN)
        LedgerService.earn(self.b.id, 20, Source.DAILY_LOGIN)

    def test_recalculate_ranks_task(self):
        from points.tasks import recalculate_ranks

        result = recalculate_ranks.apply()

        self.assertEqual(result.get()["ranked"], 2)
        self.assertEqual(PointBalance.objects.get(user=self.b).current_rank, 1)
        self.assertEqual(PointBalance.objects.get(user=self.a).current_rank, 2)

    def test_reset_season_task(self):
        from points.tasks import reset_season

        result = reset_season.apply()

        self.assertEqual(result.get()["reset"], 2)
        self.assertFalse(PointBalance.objects.filter(season_points__gt=0).exists())

    def test_verify_ledger_task(self):
        from points.tasks import verify_ledger

        PointBalance.objects.filter(user=self.b).update(total_points=1)
        result = verify_ledger.apply()

        self.assertEqual(result.get()["checked"], 2)
        self.assertEqual(result.get()["mismatched"], [self.b.id])

    @patch("points.tasks.RankingService.recalculate_all")
    def test_recalculate_ranks_logs_failures(self, mock_recalculate):
        from points.tasks import recalculate_ranks

        mock_recalculate.side_effect = RuntimeError("database unavailable")

        with self.assertLogs("points.tasks", level="ERROR"):
            result = recalculate_ranks.apply()

        self.assertTrue(result.failed())


# ============================================================
# Management Command Tests
# ============================================================


class ManagementCommandTest(TransactionTestCase):
    def setUp(self):
        self.a = make_user("a")
        LedgerService.earn(self.a.id, 10, Source.DAILY_LOGIN)

    def test_recalculate_ranks_command(self):
        out = StringIO()
        call_command("recalculate_ranks", stdout=out)
        self.assertIn("Ranked 1 balance(s).", out.getvalue())
        self.assertEqual(PointBalance.objects.get(user=self.a).current_rank, 1)

    def test_reset_season_command(self):
        out = StringIO()
        call_command("reset_season", "--yes", stdout=out)
        self.assertIn("Season reset for 1 balance(s).", out.getvalue())
        self.assertEqual(PointBalance.objects.get(user=self.a).season_points, 0)

    @patch("builtins.input", return_value="n")
    def test_reset_season_command_cancelled(self, mock_input):
        out = StringIO()
        call_command("reset_season", stdout=out)
        self.assertIn("cancelled", out.getvalue())
        self.assertEqual(PointBalance.objects.get(user=self.a).season_points, 10)

    def test_verify_ledger_command(self):
        out = StringIO()
        call_command("verify_ledger", stdout=out)
        self.assertIn("Verified 1 balance(s).", out.getvalue())

    def test_verify_ledger_command_reports_mismatch(self):
        PointBalance.objects.filter(user=self.a).update(lifetime_earned=3)
        with self.assertRaises(CommandError):
            call_command("verify_ledger", "--user", str(self.a.id), stdout=StringIO())
