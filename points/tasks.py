import logging

from celery import shared_task
from django.conf import settings

from points.models import PointBalance
from points.services import LedgerService, RankingService

logger = logging.getLogger(__name__)

MAX_RETRIES = getattr(settings, "POINTS_TASK_MAX_RETRIES", 3)


@shared_task(bind=True, acks_late=True, max_retries=MAX_RETRIES, default_retry_delay=30)
def recalculate_ranks(self):
    """
    Periodic task: reorder every balance by total points and store the ranks.

    Runs via Celery Beat every POINTS_RANK_RECALC_INTERVAL seconds.
    """
    try:
        ranked = RankingService.recalculate_all()
    except Exception as exc:
        logger.exception("Rank recalculation failed: %s", str(exc))
        raise self.retry(exc=exc, countdown=2**self.request.retries * 10)

    return {"ranked": ranked}


@shared_task(bind=True, acks_late=True, max_retries=MAX_RETRIES, default_retry_delay=30)
def reset_season(self):
    """Season boundary task: zero season points and clear ranks."""
    try:
        reset = RankingService.reset_season()
    except Exception as exc:
        logger.exception("Season reset failed: %s", str(exc))
        raise self.retry(exc=exc, countdown=2**self.request.retries * 10)

    return {"reset": reset}


@shared_task
def verify_ledger():
    """
    Periodic task: rebuild every balance from its transaction log and report
    the users whose stored balance disagrees.
    """
    user_ids = list(
        PointBalance.objects.order_by("user_id").values_list("user_id", flat=True)
    )
    mismatched = [
        user_id for user_id in user_ids if not LedgerService.verify(user_id)["consistent"]
    ]

    if mismatched:
        logger.error(
            "Ledger verification found %d inconsistent balance(s): users=%s",
            len(mismatched),
            mismatched,
        )
    else:
        logger.info("Ledger verification passed: balances=%d", len(user_ids))

    return {"checked": len(user_ids), "mismatched": mismatched}
