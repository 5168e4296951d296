from django.conf import settings
from django.db import models

from points.models.base import BaseModel


class PointBalance(BaseModel):
    """
    Running point totals for a single user.

    Rows are created lazily by the ledger service on the first
    balance-affecting event and are never deleted. All mutation goes through
    ``LedgerService`` under a row lock; ``current_rank`` is written only by
    the ranking recalculator.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="point_balance",
    )
    total_points = models.BigIntegerField(default=0)
    lifetime_earned = models.BigIntegerField(default=0)
    lifetime_spent = models.BigIntegerField(default=0)
    season_points = models.BigIntegerField(default=0)
    current_rank = models.PositiveIntegerField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["current_rank"], name="idx_balance_rank"),
            models.Index(fields=["season_points"], name="idx_balance_season"),
            models.Index(fields=["-total_points", "user"], name="idx_balance_total"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_points__gte=0),
                name="balance_total_points_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(season_points__gte=0),
                name="balance_season_points_non_negative",
            ),
        ]

    def __str__(self):
        return f"PointBalance user={self.user_id} (total={self.total_points})"

    def has_enough_points(self, amount: int) -> bool:
        return self.total_points >= amount
