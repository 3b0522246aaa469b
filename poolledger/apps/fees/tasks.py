import logging

from celery import shared_task
from django.conf import settings

from poolledger.apps.fees.services.fee_accrual import FeeService
from poolledger.core.units import format_usdc

logger = logging.getLogger(__name__)


@shared_task(queue="ledger")
def accrue_management_fees_task() -> int:
    """Daily management fee accrual. Returns the number of pools accrued."""
    if not settings.FEE_ACCRUAL_ENABLED:
        logger.info("Fee accrual disabled, skipping")
        return 0

    accruals = FeeService().accrue_management_fees()
    for accrual in accruals:
        logger.info(f"Accrued {format_usdc(accrual.amount)} management fee for {accrual.pool_name} ({accrual.period})")
    if not accruals:
        logger.info("No management fees to accrue")
    return len(accruals)
