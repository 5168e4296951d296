from django.urls import path

from points.views import (
    BalanceView,
    GrantPointsView,
    LeaderboardView,
    PointStatsView,
    RankView,
    SeasonLeaderboardView,
    TransactionDetailView,
    TransactionListView,
    TransferView,
)

urlpatterns = [
    path("balance", BalanceView.as_view(), name="points-balance"),
    path("stats", PointStatsView.as_view(), name="points-stats"),
    path("rank", RankView.as_view(), name="points-rank"),
    path("transactions/", TransactionListView.as_view(), name="points-transactions"),
    path(
        "transactions/<int:id>/",
        TransactionDetailView.as_view(),
        name="points-transaction-detail",
    ),
    path("transfer", TransferView.as_view(), name="points-transfer"),
    path("grant", GrantPointsView.as_view(), name="points-grant"),
    path("leaderboard", LeaderboardView.as_view(), name="points-leaderboard"),
    path(
        "leaderboard/season",
        SeasonLeaderboardView.as_view(),
        name="points-season-leaderboard",
    ),
]
