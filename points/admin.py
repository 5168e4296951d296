from django.contrib import admin

from points.models import PointBalance, PointTransaction


class ReadOnlyAdminMixin:
    """
    Makes an admin model browsable but not editable.

    Balances change only through the ledger service and transactions are
    immutable, so the admin never writes either.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PointBalance)
class PointBalanceAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "user",
        "total_points",
        "season_points",
        "current_rank",
        "lifetime_earned",
        "lifetime_spent",
        "updated_at",
    )
    search_fields = ("user__username",)
    ordering = ("current_rank",)
    readonly_fields = (
        "user",
        "total_points",
        "lifetime_earned",
        "lifetime_spent",
        "season_points",
        "current_rank",
        "created_at",
        "updated_at",
    )


@admin.register(PointTransaction)
class PointTransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "transaction_type",
        "amount",
        "balance_after",
        "source",
        "reference_type",
        "reference_id",
        "created_at",
    )
    list_filter = ("transaction_type", "source")
    search_fields = ("user__username", "reference_type")
    readonly_fields = (
        "user",
        "transaction_type",
        "amount",
        "balance_after",
        "source",
        "reference_id",
        "reference_type",
        "description",
        "counterpart",
        "idempotency_key",
        "created_at",
        "updated_at",
    )
