"""Share balances derived from the append-only ledger."""

from dataclasses import dataclass

from django.db.models import Sum

from poolledger.apps.pools.models import Investment
from poolledger.core.units import Shares


@dataclass(frozen=True)
class Position:
    total_shares: Shares
    available_shares: Shares


def _sum_shares(queryset) -> int:
    return queryset.aggregate(total=Sum("shares"))["total"] or 0


def confirmed_shares(investor_id, pool_id, using="default") -> Shares:
    """Confirmed INVEST shares minus confirmed REDEEM shares."""
    events = Investment.objects.using(using).filter(
        investor_id=investor_id,
        pool_id=pool_id,
        status=Investment.STATUS_CONFIRMED,
    )
    invested = _sum_shares(events.filter(type=Investment.TYPE_INVEST))
    redeemed = _sum_shares(events.filter(type=Investment.TYPE_REDEEM))
    return Shares(invested - redeemed)


def queued_shares(investor_id, pool_id, using="default") -> Shares:
    """Shares held by the investor's non-terminal redemption requests."""
    from poolledger.apps.redemptions.models import NON_TERMINAL_STATUSES, RedemptionQueueEntry

    entries = RedemptionQueueEntry.objects.using(using).filter(
        investor_id=investor_id,
        pool_id=pool_id,
        status__in=NON_TERMINAL_STATUSES,
    )
    return Shares(_sum_shares(entries))


def get_position(investor_id, pool_id, using="default") -> Position:
    total = confirmed_shares(investor_id, pool_id, using=using)
    return Position(
        total_shares=total,
        available_shares=total - queued_shares(investor_id, pool_id, using=using),
    )
