import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PointBalance",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("total_points", models.BigIntegerField(default=0)),
                ("lifetime_earned", models.BigIntegerField(default=0)),
                ("lifetime_spent", models.BigIntegerField(default=0)),
                ("season_points", models.BigIntegerField(default=0)),
                ("current_rank", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="point_balance",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "abstract": False,
                "indexes": [
                    models.Index(fields=["current_rank"], name="idx_balance_rank"),
                    models.Index(fields=["season_points"], name="idx_balance_season"),
                    models.Index(
                        fields=["-total_points", "user"], name="idx_balance_total"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(total_points__gte=0),
                        name="balance_total_points_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(season_points__gte=0),
                        name="balance_season_points_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PointTransaction",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "transaction_type",
                    models.CharField(
                        choices=[
                            ("EARN", "Earn"),
                            ("SPEND", "Spend"),
                            ("TRANSFER_IN", "Transfer in"),
                            ("TRANSFER_OUT", "Transfer out"),
                        ],
                        max_length=20,
                    ),
                ),
                ("amount", models.BigIntegerField()),
                (
                    "balance_after",
                    models.BigIntegerField(
                        help_text="Total points of the user right after this transaction."
                    ),
                ),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("NFT_COLLECT", "NFT collection"),
                            ("GROUP_ACTIVITY", "Group activity"),
                            ("ACHIEVEMENT", "Achievement"),
                            ("DAILY_LOGIN", "Daily login"),
                            ("MARKETPLACE_PURCHASE", "Marketplace purchase"),
                            ("MARKETPLACE_SALE", "Marketplace sale"),
                            ("TRANSFER", "Point transfer"),
                            ("EVENT_REWARD", "Event reward"),
                            ("REFERRAL", "Referral"),
                            ("ADMIN", "Admin grant"),
                        ],
                        max_length=30,
                    ),
                ),
                ("reference_id", models.BigIntegerField(blank=True, null=True)),
                (
                    "reference_type",
                    models.CharField(blank=True, max_length=50, null=True),
                ),
                (
                    "description",
                    models.CharField(blank=True, default="", max_length=500),
                ),
                (
                    "idempotency_key",
                    models.UUIDField(
                        blank=True,
                        editable=False,
                        help_text="Client-generated UUID for idempotent transfers.",
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "counterpart",
                    models.OneToOneField(
                        blank=True,
                        help_text="For a TRANSFER_OUT row, the matching TRANSFER_IN row.",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="points.pointtransaction",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="point_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "abstract": False,
                "indexes": [
                    models.Index(
                        fields=["user", "-created_at"], name="idx_point_tx_user_created"
                    ),
                    models.Index(
                        fields=["user", "transaction_type"], name="idx_point_tx_user_type"
                    ),
                    models.Index(
                        fields=["user", "source"], name="idx_point_tx_user_source"
                    ),
                    models.Index(
                        fields=["reference_id", "reference_type"],
                        name="idx_point_tx_reference",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount__gt=0),
                        name="point_tx_amount_positive",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(
                            transaction_type__in=["EARN", "SPEND"],
                            reference_id__isnull=False,
                            reference_type__isnull=False,
                        ),
                        fields=("user", "reference_id", "reference_type"),
                        name="uniq_point_tx_user_reference",
                    ),
                ],
            },
        ),
    ]
