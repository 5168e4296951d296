import logging

from django.conf import settings
from django.db import transaction

from points.models import PointBalance
from points.services.ledger import LedgerService

logger = logging.getLogger(__name__)

LEADERBOARD_DEFAULT_LIMIT = getattr(settings, "POINTS_LEADERBOARD_DEFAULT_LIMIT", 50)
LEADERBOARD_MAX_LIMIT = getattr(settings, "POINTS_LEADERBOARD_MAX_LIMIT", 100)


def _clamp_limit(limit) -> int:
    if limit is None:
        return LEADERBOARD_DEFAULT_LIMIT
    return max(1, min(int(limit), LEADERBOARD_MAX_LIMIT))


class RankingService:
    """
    Ranks users by their point totals.

    ``recalculate_all`` and ``reset_season`` are batch operations meant for
    the periodic Celery tasks; they only write ``current_rank`` and
    ``season_points``, so concurrent earn/spend calls never lose updates.
    ``rank_of`` is computed on demand and does not depend on a prior
    recalculation.
    """

    @staticmethod
    @transaction.atomic
    def recalculate_all() -> int:
        """
        Assign ``current_rank`` to every balance.

        Balances are ordered by ``total_points`` descending with ties broken
        by ascending user id, and ranked by 1-based position.

        Returns:
            Number of balances ranked.
        """
        balances = list(
            PointBalance.objects.only("id", "user_id", "total_points", "current_rank")
            .order_by("-total_points", "user_id")
        )
        for position, balance in enumerate(balances, start=1):
            balance.current_rank = position

        PointBalance.objects.bulk_update(balances, ["current_rank"], batch_size=500)

        logger.info("Ranks recalculated: balances=%d", len(balances))
        return len(balances)

    @staticmethod
    @transaction.atomic
    def reset_season() -> int:
        """
        Start a new season: zero ``season_points`` and clear ranks.

        Totals and lifetime counters are untouched.

        Returns:
            Number of balances reset.
        """
        count = PointBalance.objects.update(season_points=0, current_rank=None)
        logger.info("Season reset: balances=%d", count)
        return count

    @staticmethod
    def rank_of(user_id: int) -> int:
        """1 + number of users holding strictly more points than this one."""
        total_points = LedgerService.get_balance(user_id).total_points
        return PointBalance.objects.filter(total_points__gt=total_points).count() + 1

    @staticmethod
    def leaderboard(limit: int = None) -> list:
        """
        Top balances by total points.

        Users with equal totals share a rank, matching ``rank_of``.
        """
        balances = (
            PointBalance.objects.select_related("user")
            .order_by("-total_points", "user_id")[: _clamp_limit(limit)]
        )

        entries = []
        rank = 0
        previous_points = None
        for position, balance in enumerate(balances, start=1):
            if balance.total_points != previous_points:
                rank = position
                previous_points = balance.total_points
            entries.append(
                {
                    "rank": rank,
                    "user_id": balance.user_id,
                    "username": balance.user.get_username(),
                    "points": balance.total_points,
                }
            )
        return entries

    @staticmethod
    def season_leaderboard(limit: int = None) -> list:
        """Top balances by season points, ranked by position."""
        balances = (
            PointBalance.objects.select_related("user")
            .order_by("-season_points", "user_id")[: _clamp_limit(limit)]
        )
        return [
            {
                "rank": position,
                "user_id": balance.user_id,
                "username": balance.user.get_username(),
                "points": balance.season_points,
            }
            for position, balance in enumerate(balances, start=1)
        ]

    @staticmethod
    def summary(user_id: int) -> dict:
        balance = LedgerService.get_balance(user_id)
        return {
            "total_points": balance.total_points,
            "lifetime_earned": balance.lifetime_earned,
            "lifetime_spent": balance.lifetime_spent,
            "season_points": balance.season_points,
            "current_rank": RankingService.rank_of(user_id),
            "earned_by_source": LedgerService.earned_by_source(user_id),
        }
