import logging

from celery import shared_task
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from redis import Redis

from poolledger.apps.redemptions.models import RedemptionStatus
from poolledger.apps.redemptions.services.redemption_queue import RedemptionQueueService
from poolledger.onchain.executor import PoolContractExecutor

logger = logging.getLogger(__name__)

SETTLEMENT_LOCK_NAME = "poolledger:settlement-sweep"


@shared_task(queue="ledger", task_time_limit=1800)
def settle_eligible_redemptions_task() -> dict:
    """
    Settlement sweep. Only one sweep runs at a time; a run that cannot take
    the lock returns immediately.
    """
    if not settings.SETTLEMENT_ENABLED:
        logger.info("Settlement disabled, skipping")
        return {"skipped": True, "settled": 0, "failed": 0}

    redis = Redis.from_url(settings.CELERY_BROKER_URL)
    lock = redis.lock(SETTLEMENT_LOCK_NAME, timeout=settings.SETTLEMENT_LOCK_TIMEOUT)
    if not lock.acquire(blocking=False):
        logger.info("Settlement sweep already running, skipping")
        return {"skipped": True, "settled": 0, "failed": 0}

    try:
        try:
            executor = PoolContractExecutor()
        except ImproperlyConfigured as e:
            logger.error(f"Settlement executor not configured: {e}")
            raise

        results = RedemptionQueueService().run_settlement_cycle(
            executor, max_batch=settings.SETTLEMENT_MAX_BATCH
        )
    finally:
        lock.release()

    settled = sum(1 for r in results if r.status == RedemptionStatus.SETTLED)
    summary = {"skipped": False, "settled": settled, "failed": len(results) - settled}
    logger.info(f"Settlement sweep finished: {summary['settled']} settled, {summary['failed']} failed")
    return summary
