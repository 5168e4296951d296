from points.models.balance import PointBalance
from points.models.transaction import TRANSFER_REFERENCE_TYPE, PointTransaction

__all__ = [
    "PointBalance",
    "PointTransaction",
    "TRANSFER_REFERENCE_TYPE",
]
