from points.services.ledger import LedgerService
from points.services.ranking import RankingService

__all__ = [
    "LedgerService",
    "RankingService",
]
