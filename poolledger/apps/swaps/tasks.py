import logging

from celery import shared_task

from poolledger.apps.swaps.services.swap_composer import SwapService

logger = logging.getLogger(__name__)


@shared_task(queue="ledger")
def cleanup_stale_swaps_task() -> int:
    return SwapService().cleanup_stale_swaps()
