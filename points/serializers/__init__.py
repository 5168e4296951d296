from points.serializers.balance import BalanceSerializer, PointStatsSerializer
from points.serializers.transaction import (
    TransactionFilterSerializer,
    TransactionSerializer,
)
from points.serializers.transfer import TransferSerializer
from points.serializers.grant import GrantSerializer
from points.serializers.leaderboard import (
    LeaderboardEntrySerializer,
    LeaderboardQuerySerializer,
)

__all__ = [
    "BalanceSerializer",
    "PointStatsSerializer",
    "TransactionSerializer",
    "TransactionFilterSerializer",
    "TransferSerializer",
    "GrantSerializer",
    "LeaderboardEntrySerializer",
    "LeaderboardQuerySerializer",
]
