from django.conf import settings
from django.db import models

from points.models.base import BaseModel

TRANSFER_REFERENCE_TYPE = "USER_TRANSFER"


class PointTransaction(BaseModel):
    """
    Immutable record of a single point-affecting event.

    Earn and spend rows carry the ``(reference_id, reference_type)`` of the
    event that caused them; at most one earn/spend row may exist per user
    for a given reference, which is what makes reward callbacks safe to
    replay. Transfer rows reference the counterparty user instead and are
    linked to each other through ``counterpart``.
    """

    class TransactionType(models.TextChoices):
        EARN = "EARN", "Earn"
        SPEND = "SPEND", "Spend"
        TRANSFER_IN = "TRANSFER_IN", "Transfer in"
        TRANSFER_OUT = "TRANSFER_OUT", "Transfer out"

    class Source(models.TextChoices):
        NFT_COLLECT = "NFT_COLLECT", "NFT collection"
        GROUP_ACTIVITY = "GROUP_ACTIVITY", "Group activity"
        ACHIEVEMENT = "ACHIEVEMENT", "Achievement"
        DAILY_LOGIN = "DAILY_LOGIN", "Daily login"
        MARKETPLACE_PURCHASE = "MARKETPLACE_PURCHASE", "Marketplace purchase"
        MARKETPLACE_SALE = "MARKETPLACE_SALE", "Marketplace sale"
        TRANSFER = "TRANSFER", "Point transfer"
        EVENT_REWARD = "EVENT_REWARD", "Event reward"
        REFERRAL = "REFERRAL", "Referral"
        ADMIN = "ADMIN", "Admin grant"

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="point_transactions",
    )
    transaction_type = models.CharField(
        max_length=20,
        choices=TransactionType.choices,
    )
    amount = models.BigIntegerField()
    balance_after = models.BigIntegerField(
        help_text="Total points of the user right after this transaction.",
    )
    source = models.CharField(max_length=30, choices=Source.choices)
    reference_id = models.BigIntegerField(null=True, blank=True)
    reference_type = models.CharField(max_length=50, null=True, blank=True)
    description = models.CharField(max_length=500, blank=True, default="")
    counterpart = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
        help_text="For a TRANSFER_OUT row, the matching TRANSFER_IN row.",
    )
    idempotency_key = models.UUIDField(
        unique=True,
        null=True,
        blank=True,
        editable=False,
        help_text="Client-generated UUID for idempotent transfers.",
    )

    class Meta(BaseModel.Meta):
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["user", "-created_at"], name="idx_point_tx_user_created"),
            models.Index(fields=["user", "transaction_type"], name="idx_point_tx_user_type"),
            models.Index(fields=["user", "source"], name="idx_point_tx_user_source"),
            models.Index(
                fields=["reference_id", "reference_type"], name="idx_point_tx_reference"
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="point_tx_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["user", "reference_id", "reference_type"],
                condition=models.Q(
                    transaction_type__in=["EARN", "SPEND"],
                    reference_id__isnull=False,
                    reference_type__isnull=False,
                ),
                name="uniq_point_tx_user_reference",
            ),
        ]

    def __str__(self):
        return (
            f"PointTransaction {self.id} | {self.transaction_type} | "
            f"{self.amount} | {self.source}"
        )

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Point transactions are immutable once recorded.")
        super().save(*args, **kwargs)

    @property
    def is_credit(self) -> bool:
        return self.transaction_type in (
            self.TransactionType.EARN,
            self.TransactionType.TRANSFER_IN,
        )

    @classmethod
    def find_by_reference(cls, user_id, reference_id, reference_type):
        """Return the earn/spend row already recorded for this event, if any."""
        return cls.objects.filter(
            user_id=user_id,
            reference_id=reference_id,
            reference_type=reference_type,
            transaction_type__in=[
                cls.TransactionType.EARN,
                cls.TransactionType.SPEND,
            ],
        ).first()
