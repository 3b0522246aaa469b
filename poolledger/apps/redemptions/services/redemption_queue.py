"""
Redemption Queue Engine

Off-chain redemption queue with T+N settlement:
- investors queue redemptions with the NAV locked at request time
- large redemptions wait for admin approval
- the settlement sweep drives eligible entries through the on-chain executor
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
import logging

from django.core.exceptions import PermissionDenied, ValidationError
from django.db import transaction
from django.db.models import Count, Sum
from django.utils import timezone

from poolledger.apps.pools.models import AssetPool, Investment
from poolledger.apps.pools.services.positions import Position, get_position
from poolledger.apps.redemptions.models import (
    CANCELLABLE_STATUSES,
    NON_TERMINAL_STATUSES,
    SETTLEABLE_STATUSES,
    RedemptionQueueCounter,
    RedemptionQueueEntry,
    RedemptionStatus,
)
from poolledger.apps.users.models import Investor
from poolledger.apps.users.permissions import require_admin
from poolledger.core.units import Shares, Usdc, format_shares, shares_to_usdc
from poolledger.onchain.executor import SettlementExecutor

logger = logging.getLogger(__name__)

# Per-investor cap on simultaneously open requests
MAX_PENDING_REDEMPTIONS = 10


@dataclass(frozen=True)
class QueueRedemptionResult:
    id: str
    queue_position: int
    estimated_amount: Usdc
    settlement_date: datetime
    requires_approval: bool


@dataclass(frozen=True)
class SettlementResult:
    id: str
    investor_id: int
    pool_id: int
    shares: Shares
    amount: Usdc
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None


class RedemptionQueueService:
    def __init__(self, using: str = "default"):
        self.using = using

    def _entries(self):
        return RedemptionQueueEntry.objects.using(self.using)

    def _get_entry(self, entry_id, for_update=False) -> RedemptionQueueEntry:
        qs = self._entries()
        if for_update:
            qs = qs.select_for_update()
        try:
            return qs.get(pk=entry_id)
        except (RedemptionQueueEntry.DoesNotExist, ValidationError):
            raise ValidationError("Redemption not found")

    # ============================================================
    # REQUESTS
    # ============================================================

    def queue_redemption(self, investor_id, pool_id, shares: Shares) -> QueueRedemptionResult:
        """
        Queue a redemption at the pool's current NAV.

        The pool's counter row is locked while the next position is issued,
        so concurrent requests against one pool serialize on it and never
        share a position. The investor row is locked as well, and both the
        available shares and the open-request cap are re-checked under the locks.
        """
        if not shares.is_positive():
            raise ValidationError("Shares must be positive")

        try:
            pool = AssetPool.objects.using(self.using).get(pk=pool_id)
        except AssetPool.DoesNotExist:
            raise ValidationError("Pool not found")
        if not pool.is_active:
            raise ValidationError("Pool is not active")

        current_nav = pool.nav
        if not current_nav.is_positive():
            raise ValidationError("Invalid pool NAV")

        if self.get_user_position(investor_id, pool_id).available_shares < shares:
            raise ValidationError("Insufficient shares")
        self._check_open_request_cap(investor_id)

        estimated_amount = shares_to_usdc(shares, current_nav)
        settlement_date = timezone.now() + timedelta(days=pool.settlement_days)
        # A threshold of 0 means no approval step
        requires_approval = bool(pool.large_redemption_threshold) and (
            estimated_amount >= Usdc(pool.large_redemption_threshold)
        )

        with transaction.atomic(using=self.using):
            # Investor row first, then the pool counter: the open-request cap
            # spans pools, positions are per pool
            list(Investor.objects.using(self.using).select_for_update().filter(pk=investor_id))
            counter, _ = (
                RedemptionQueueCounter.objects.using(self.using)
                .select_for_update()
                .get_or_create(pool=pool)
            )
            if self.get_user_position(investor_id, pool_id).available_shares < shares:
                raise ValidationError("Insufficient shares")
            self._check_open_request_cap(investor_id)

            counter.last_position += 1
            counter.save(using=self.using, update_fields=["last_position"])

            entry = self._entries().create(
                investor_id=investor_id,
                pool=pool,
                shares=shares.raw,
                nav_at_request=current_nav.raw,
                estimated_amount=estimated_amount.raw,
                queue_position=counter.last_position,
                settlement_date=settlement_date,
                status=(
                    RedemptionStatus.PENDING_APPROVAL if requires_approval else RedemptionStatus.QUEUED
                ),
                requires_approval=requires_approval,
            )

        logger.info(
            f"Queued redemption {entry.id}: {format_shares(shares)} shares of {pool.name} "
            f"at position {entry.queue_position} (approval: {requires_approval})"
        )
        return QueueRedemptionResult(
            id=str(entry.id),
            queue_position=entry.queue_position,
            estimated_amount=estimated_amount,
            settlement_date=settlement_date,
            requires_approval=requires_approval,
        )

    def _check_open_request_cap(self, investor_id):
        open_count = self._entries().filter(
            investor_id=investor_id, status__in=NON_TERMINAL_STATUSES
        ).count()
        if open_count >= MAX_PENDING_REDEMPTIONS:
            raise ValidationError(
                "Maximum pending redemptions reached. Wait for existing ones to settle."
            )

    def get_user_position(self, investor_id, pool_id) -> Position:
        """Confirmed ledger balance, and what remains after open queue entries."""
        return get_position(investor_id, pool_id, using=self.using)

    def get_user_redemptions(self, investor_id, statuses: Optional[Sequence[str]] = None):
        entries = self._entries().filter(investor_id=investor_id)
        if statuses:
            entries = entries.filter(status__in=statuses)
        return list(entries.select_related("pool").order_by("-created_at"))

    # ============================================================
    # TRANSITIONS
    # ============================================================

    def cancel_redemption(self, entry_id, investor_id) -> RedemptionQueueEntry:
        """Investor cancels while the entry is still QUEUED or PENDING_APPROVAL."""
        with transaction.atomic(using=self.using):
            entry = self._get_entry(entry_id, for_update=True)
            if str(entry.investor_id) != str(investor_id):
                raise PermissionDenied("Not authorized")
            if entry.status not in CANCELLABLE_STATUSES:
                raise ValidationError(f"Cannot cancel redemption in status {entry.status}")
            entry.status = RedemptionStatus.CANCELLED
            entry.reason = "Cancelled by user"
            entry.save(using=self.using, update_fields=["status", "reason", "updated_at"])
        logger.info(f"Redemption {entry.id} cancelled by investor {investor_id}")
        return entry

    def approve_redemption(self, entry_id, admin_id) -> RedemptionQueueEntry:
        require_admin(admin_id, using=self.using)
        with transaction.atomic(using=self.using):
            entry = self._get_entry(entry_id, for_update=True)
            if entry.status != RedemptionStatus.PENDING_APPROVAL:
                raise ValidationError("Redemption is not pending approval")
            entry.status = RedemptionStatus.APPROVED
            entry.approved_by = str(admin_id)
            entry.save(using=self.using, update_fields=["status", "approved_by", "updated_at"])
        logger.info(f"Redemption {entry.id} approved by admin {admin_id}")
        return entry

    def reject_redemption(self, entry_id, admin_id, reason: str) -> RedemptionQueueEntry:
        require_admin(admin_id, using=self.using)
        with transaction.atomic(using=self.using):
            entry = self._get_entry(entry_id, for_update=True)
            if entry.status != RedemptionStatus.PENDING_APPROVAL:
                raise ValidationError("Redemption is not pending approval")
            entry.status = RedemptionStatus.REJECTED
            entry.approved_by = str(admin_id)
            entry.reason = reason
            entry.save(using=self.using, update_fields=["status", "approved_by", "reason", "updated_at"])
        logger.info(f"Redemption {entry.id} rejected by admin {admin_id}: {reason}")
        return entry

    # ============================================================
    # SETTLEMENT
    # ============================================================

    def get_eligible_redemptions(self, pool_id=None, now: Optional[datetime] = None) -> List[RedemptionQueueEntry]:
        """QUEUED/APPROVED entries whose settlement date has passed, FIFO per pool."""
        entries = self._entries().filter(
            status__in=SETTLEABLE_STATUSES,
            settlement_date__lte=now or timezone.now(),
        )
        if pool_id is not None:
            entries = entries.filter(pool_id=pool_id)
        return list(entries.select_related("investor", "pool").order_by("pool_id", "queue_position"))

    def _claim(self, entry_id) -> bool:
        """QUEUED/APPROVED -> PROCESSING as a single conditional update."""
        claimed = self._entries().filter(pk=entry_id, status__in=SETTLEABLE_STATUSES).update(
            status=RedemptionStatus.PROCESSING, updated_at=timezone.now()
        )
        return claimed == 1

    def process_settlement(self, entry_id, executor: SettlementExecutor) -> SettlementResult:
        """
        Settle one entry on-chain, at most once.

        Only the caller whose conditional claim moves the entry to PROCESSING
        invokes the executor. An executor failure leaves the entry FAILED with
        the error as its reason; it is not retried.
        """
        entry = self._get_entry(entry_id)
        if entry.status not in SETTLEABLE_STATUSES or not self._claim(entry.pk):
            raise ValidationError("Redemption not eligible for settlement")

        shares = entry.share_amount
        try:
            investor_address = entry.investor.settlement_address
            if not investor_address:
                raise ValueError("Investor has no wallet address")

            result = executor.execute(entry.pool.chain_pool_id, investor_address, shares)
        except Exception as e:
            logger.error(f"Settlement of redemption {entry.pk} failed: {e}")
            self._entries().filter(pk=entry.pk, status=RedemptionStatus.PROCESSING).update(
                status=RedemptionStatus.FAILED, reason=str(e), updated_at=timezone.now()
            )
            return SettlementResult(
                id=str(entry.pk),
                investor_id=entry.investor_id,
                pool_id=entry.pool_id,
                shares=shares,
                amount=Usdc(0),
                status=RedemptionStatus.FAILED,
                error=str(e),
            )

        with transaction.atomic(using=self.using):
            self._entries().filter(pk=entry.pk).update(
                status=RedemptionStatus.SETTLED,
                filled_shares=shares.raw,
                tx_hash=result.tx_hash,
                updated_at=timezone.now(),
            )
            Investment.objects.using(self.using).create(
                investor_id=entry.investor_id,
                pool_id=entry.pool_id,
                type=Investment.TYPE_REDEEM,
                amount=result.amount.raw,
                shares=shares.raw,
                status=Investment.STATUS_CONFIRMED,
                tx_hash=result.tx_hash,
                share_price_at_event=entry.nav_at_request,
            )

        logger.info(f"Settled redemption {entry.pk} (tx: {result.tx_hash})")
        return SettlementResult(
            id=str(entry.pk),
            investor_id=entry.investor_id,
            pool_id=entry.pool_id,
            shares=shares,
            amount=result.amount,
            status=RedemptionStatus.SETTLED,
            tx_hash=result.tx_hash,
        )

    def run_settlement_cycle(self, executor: SettlementExecutor, max_batch: int = 10) -> List[SettlementResult]:
        """
        One settlement sweep: the oldest eligible entries first, up to
        `max_batch`, then stale swap cleanup.
        """
        from poolledger.apps.swaps.services.swap_composer import SwapService

        results: List[SettlementResult] = []
        eligible = self.get_eligible_redemptions()
        if not eligible:
            logger.info("No eligible redemptions to settle")
        else:
            logger.info(f"Found {len(eligible)} eligible redemptions")

        for entry in eligible[:max_batch]:
            try:
                result = self.process_settlement(entry.pk, executor)
            except ValidationError as e:
                # Claimed by another runner or changed state since selection
                logger.warning(f"Skipping redemption {entry.pk}: {e.messages[0]}")
                continue
            results.append(result)
            if result.status == RedemptionStatus.SETTLED:
                logger.info(
                    f"Settled: {entry.investor.settlement_address} - "
                    f"{format_shares(result.shares)} shares from {entry.pool.name}"
                )
            else:
                logger.error(f"Failed: {entry.pk} - {result.error}")

        SwapService(using=self.using).cleanup_stale_swaps()
        return results

    # ============================================================
    # STATS
    # ============================================================

    def get_pool_queue_stats(self, pool_id) -> dict:
        buckets = (
            RedemptionStatus.QUEUED,
            RedemptionStatus.PENDING_APPROVAL,
            RedemptionStatus.PROCESSING,
        )
        rows = {
            row["status"]: row
            for row in self._entries()
            .filter(pool_id=pool_id, status__in=buckets)
            .order_by()
            .values("status")
            .annotate(count=Count("id"), total_shares=Sum("shares"), total_amount=Sum("estimated_amount"))
        }

        def bucket(status):
            row = rows.get(status, {})
            return {
                "count": row.get("count", 0),
                "total_shares": Shares(row.get("total_shares") or 0),
                "total_amount": Usdc(row.get("total_amount") or 0),
            }

        return {
            "pool_id": pool_id,
            "queued": bucket(RedemptionStatus.QUEUED),
            "pending_approval": bucket(RedemptionStatus.PENDING_APPROVAL),
            "processing": bucket(RedemptionStatus.PROCESSING),
        }
