from points.views.balance import BalanceView, PointStatsView, RankView
from points.views.transaction import TransactionDetailView, TransactionListView
from points.views.transfer import TransferView
from points.views.grant import GrantPointsView
from points.views.leaderboard import LeaderboardView, SeasonLeaderboardView

__all__ = [
    "BalanceView",
    "PointStatsView",
    "RankView",
    "TransactionListView",
    "TransactionDetailView",
    "TransferView",
    "GrantPointsView",
    "LeaderboardView",
    "SeasonLeaderboardView",
]
