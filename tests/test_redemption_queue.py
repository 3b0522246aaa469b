from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import threading

import pytest
from django.core.exceptions import PermissionDenied, ValidationError
from django.db import IntegrityError, connection, transaction
from django.utils import timezone

from poolledger.apps.pools.models import AssetPool, Investment
from poolledger.apps.redemptions.models import RedemptionQueueEntry, RedemptionStatus
from poolledger.apps.redemptions.services.redemption_queue import (
    MAX_PENDING_REDEMPTIONS,
    RedemptionQueueService,
)
from poolledger.core.units import Shares, Usdc
from poolledger.onchain.executor import ExecutionResult, SettlementExecutor

pytestmark = pytest.mark.django_db


class RecordingExecutor(SettlementExecutor):
    def __init__(self, fail_with=None):
        self.calls = []
        self.fail_with = fail_with

    def execute(self, chain_pool_id, investor_address, shares):
        self.calls.append((chain_pool_id, investor_address, shares))
        if self.fail_with:
            raise self.fail_with
        return ExecutionResult(tx_hash=f"0xtx{len(self.calls)}", amount=Usdc(shares.raw * 105 // 100))


@pytest.fixture
def service():
    return RedemptionQueueService()


@pytest.fixture
def funded(investor, pool, fund):
    fund(investor, pool, 100_000_000)
    return investor


def make_due(*entry_ids):
    RedemptionQueueEntry.objects.filter(pk__in=entry_ids).update(
        settlement_date=timezone.now() - timedelta(minutes=1)
    )


class TestQueueRedemption:
    def test_locks_nav_and_issues_first_position(self, service, funded, pool):
        before = timezone.now()
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))

        assert result.queue_position == 1
        assert result.estimated_amount == Usdc(105_000_000)
        assert result.requires_approval is False
        assert before + timedelta(days=3) <= result.settlement_date <= timezone.now() + timedelta(days=3)

        entry = RedemptionQueueEntry.objects.get(pk=result.id)
        assert entry.status == RedemptionStatus.QUEUED
        assert entry.nav_at_request == 105_000_000

    def test_queued_shares_are_held_out_of_available_balance(self, service, funded, pool):
        service.queue_redemption(funded.pk, pool.pk, Shares(60_000_000))

        position = service.get_user_position(funded.pk, pool.pk)
        assert position.total_shares == Shares(100_000_000)
        assert position.available_shares == Shares(40_000_000)
        with pytest.raises(ValidationError):
            service.queue_redemption(funded.pk, pool.pk, Shares(50_000_000))

    def test_positions_increase_per_pool(self, service, funded, other_investor, pool, target_pool, fund):
        fund(other_investor, pool, 10_000_000)
        fund(funded, target_pool, 10_000_000)

        a = service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
        b = service.queue_redemption(other_investor.pk, pool.pk, Shares(1_000_000))
        c = service.queue_redemption(funded.pk, target_pool.pk, Shares(1_000_000))
        service.cancel_redemption(b.id, other_investor.pk)
        d = service.queue_redemption(other_investor.pk, pool.pk, Shares(1_000_000))

        assert (a.queue_position, b.queue_position, d.queue_position) == (1, 2, 3)
        assert c.queue_position == 1

    def test_large_redemption_needs_approval(self, service, funded, pool):
        AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=105_000_000)
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))

    def test_zero_threshold_means_no_approval(self, service, funded, pool):
        AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=0)
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))

        assert result.requires_approval is False
        assert RedemptionQueueEntry.objects.get(pk=result.id).status == RedemptionStatus.QUEUED

    def test_position_is_unique_per_pool(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
        entry = RedemptionQueueEntry.objects.get(pk=result.id)

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                RedemptionQueueEntry.objects.create(
                    investor=funded,
                    pool=pool,
                    shares=1_000_000,
                    nav_at_request=entry.nav_at_request,
                    estimated_amount=entry.estimated_amount,
                    queue_position=entry.queue_position,
                    settlement_date=entry.settlement_date,
                )
        assert RedemptionQueueEntry.objects.count() == 1

        assert result.requires_approval is True
        assert RedemptionQueueEntry.objects.get(pk=result.id).status == RedemptionStatus.PENDING_APPROVAL

    @pytest.mark.parametrize("shares", [0, -1])
    def test_rejects_non_positive_shares(self, service, funded, pool, shares):
        with pytest.raises(ValidationError):
            service.queue_redemption(funded.pk, pool.pk, Shares(shares))

    def test_rejects_inactive_pool(self, service, funded, pool):
        AssetPool.objects.filter(pk=pool.pk).update(status=AssetPool.STATUS_PAUSED)
        with pytest.raises(ValidationError):
            service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
        assert not RedemptionQueueEntry.objects.exists()

    def test_rejects_missing_pool(self, service, funded):
        with pytest.raises(ValidationError):
            service.queue_redemption(funded.pk, 9999, Shares(1_000_000))

    def test_open_request_cap(self, service, funded, pool):
        for _ in range(MAX_PENDING_REDEMPTIONS):
            service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
        with pytest.raises(ValidationError):
            service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
        assert RedemptionQueueEntry.objects.count() == MAX_PENDING_REDEMPTIONS


class TestTransitions:
    def test_owner_cancels(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        entry = service.cancel_redemption(result.id, funded.pk)

        assert entry.status == RedemptionStatus.CANCELLED
        assert entry.reason == "Cancelled by user"
        assert service.get_user_position(funded.pk, pool.pk).available_shares == Shares(100_000_000)

    def test_only_owner_cancels(self, service, funded, other_investor, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        with pytest.raises(PermissionDenied):
            service.cancel_redemption(result.id, other_investor.pk)
        assert RedemptionQueueEntry.objects.get(pk=result.id).status == RedemptionStatus.QUEUED

    def test_cannot_cancel_twice(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        service.cancel_redemption(result.id, funded.pk)
        with pytest.raises(ValidationError):
            service.cancel_redemption(result.id, funded.pk)

    def test_unknown_entry(self, service, funded):
        with pytest.raises(ValidationError):
            service.cancel_redemption("not-a-uuid", funded.pk)

    def test_admin_approves_then_entry_settles(self, service, funded, pool, admin):
        AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=1_000_000)
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))

        entry = service.approve_redemption(result.id, admin.pk)
        assert entry.status == RedemptionStatus.APPROVED
        assert entry.approved_by == str(admin.pk)

        make_due(result.id)
        assert [e.pk for e in service.get_eligible_redemptions()] == [entry.pk]

    def test_admin_rejects(self, service, funded, pool, admin):
        AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=1_000_000)
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))

        entry = service.reject_redemption(result.id, admin.pk, "Exceeds liquidity buffer")
        assert entry.status == RedemptionStatus.REJECTED
        assert entry.reason == "Exceeds liquidity buffer"
        assert service.get_user_position(funded.pk, pool.pk).available_shares == Shares(100_000_000)

    def test_approval_requires_admin(self, service, funded, pool, admin):
        AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=1_000_000)
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        with pytest.raises(PermissionDenied):
            service.approve_redemption(result.id, funded.pk)
        assert RedemptionQueueEntry.objects.get(pk=result.id).status == RedemptionStatus.PENDING_APPROVAL

    def test_cannot_approve_queued_entry(self, service, funded, pool, admin):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        with pytest.raises(ValidationError):
            service.approve_redemption(result.id, admin.pk)


class TestSettlement:
    def test_not_eligible_before_settlement_date(self, service, funded, pool):
        service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        assert service.get_eligible_redemptions() == []
        assert len(service.get_eligible_redemptions(now=timezone.now() + timedelta(days=4))) == 1

    def test_pending_approval_is_never_eligible(self, service, funded, pool):
        AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=1_000_000)
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        make_due(result.id)
        assert service.get_eligible_redemptions() == []

    def test_successful_settlement_writes_ledger(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        make_due(result.id)
        executor = RecordingExecutor()

        settlement = service.process_settlement(result.id, executor)

        assert settlement.status == RedemptionStatus.SETTLED
        assert settlement.tx_hash == "0xtx1"
        assert executor.calls == [(1, funded.wallet_address, Shares(100_000_000))]
        entry = RedemptionQueueEntry.objects.get(pk=result.id)
        assert entry.status == RedemptionStatus.SETTLED
        assert entry.filled_shares == 100_000_000
        redeem = Investment.objects.get(type=Investment.TYPE_REDEEM)
        assert redeem.shares == 100_000_000
        assert redeem.tx_hash == "0xtx1"
        position = service.get_user_position(funded.pk, pool.pk)
        assert position.total_shares == Shares(0)
        assert position.available_shares == Shares(0)

    def test_settles_at_most_once(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        executor = RecordingExecutor()
        service.process_settlement(result.id, executor)

        with pytest.raises(ValidationError):
            service.process_settlement(result.id, executor)
        assert len(executor.calls) == 1

    def test_claimed_entry_is_not_handed_to_executor(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        RedemptionQueueEntry.objects.filter(pk=result.id).update(status=RedemptionStatus.PROCESSING)
        executor = RecordingExecutor()

        with pytest.raises(ValidationError):
            service.process_settlement(result.id, executor)
        assert executor.calls == []

    def test_executor_failure_marks_entry_failed(self, service, funded, pool):
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        make_due(result.id)

        settlement = service.process_settlement(result.id, RecordingExecutor(fail_with=RuntimeError("reverted")))

        assert settlement.status == RedemptionStatus.FAILED
        assert settlement.error == "reverted"
        entry = RedemptionQueueEntry.objects.get(pk=result.id)
        assert entry.status == RedemptionStatus.FAILED
        assert entry.reason == "reverted"
        assert not Investment.objects.filter(type=Investment.TYPE_REDEEM).exists()
        assert service.get_eligible_redemptions() == []
        with pytest.raises(ValidationError):
            service.process_settlement(result.id, RecordingExecutor())

    def test_missing_wallet_fails_entry(self, service, funded, pool):
        funded.wallet_address = None
        funded.save()
        result = service.queue_redemption(funded.pk, pool.pk, Shares(100_000_000))
        executor = RecordingExecutor()

        settlement = service.process_settlement(result.id, executor)

        assert settlement.status == RedemptionStatus.FAILED
        assert executor.calls == []

    def test_eligible_entries_are_fifo_per_pool(self, service, funded, other_investor, pool, target_pool, fund):
        fund(other_investor, pool, 10_000_000)
        fund(funded, target_pool, 10_000_000)
        ids = [
            service.queue_redemption(other_investor.pk, pool.pk, Shares(1_000_000)).id,
            service.queue_redemption(funded.pk, target_pool.pk, Shares(1_000_000)).id,
            service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000)).id,
        ]
        make_due(*ids)

        eligible = service.get_eligible_redemptions()
        assert [(e.pool_id, e.queue_position) for e in eligible] == [
            (pool.pk, 1),
            (pool.pk, 2),
            (target_pool.pk, 1),
        ]
        assert [e.pool_id for e in service.get_eligible_redemptions(pool_id=target_pool.pk)] == [target_pool.pk]

    def test_cycle_respects_batch_size(self, service, funded, pool):
        ids = [service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000)).id for _ in range(3)]
        make_due(*ids)
        executor = RecordingExecutor()

        results = service.run_settlement_cycle(executor, max_batch=2)

        assert [r.status for r in results] == [RedemptionStatus.SETTLED] * 2
        assert RedemptionQueueEntry.objects.filter(status=RedemptionStatus.QUEUED).count() == 1


def test_pool_queue_stats(service, funded, pool, admin):
    service.queue_redemption(funded.pk, pool.pk, Shares(10_000_000))
    service.queue_redemption(funded.pk, pool.pk, Shares(20_000_000))
    AssetPool.objects.filter(pk=pool.pk).update(large_redemption_threshold=50_000_000)
    service.queue_redemption(funded.pk, pool.pk, Shares(50_000_000))

    stats = service.get_pool_queue_stats(pool.pk)

    assert stats["queued"] == {"count": 2, "total_shares": Shares(30_000_000), "total_amount": Usdc(31_500_000)}
    assert stats["pending_approval"]["count"] == 1
    assert stats["pending_approval"]["total_amount"] == Usdc(52_500_000)
    assert stats["processing"]["count"] == 0


def test_user_redemptions_filtered_by_status(service, funded, pool):
    first = service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
    service.queue_redemption(funded.pk, pool.pk, Shares(1_000_000))
    service.cancel_redemption(first.id, funded.pk)

    assert len(service.get_user_redemptions(funded.pk)) == 2
    cancelled = service.get_user_redemptions(funded.pk, statuses=[RedemptionStatus.CANCELLED])
    assert [str(e.pk) for e in cancelled] == [first.id]


def _queue_concurrently(requests):
    """Run queue_redemption calls from separate threads released together."""
    barrier = threading.Barrier(len(requests))

    def run(args):
        investor_id, pool_id, shares = args
        try:
            barrier.wait()
            return RedemptionQueueService().queue_redemption(investor_id, pool_id, shares)
        except ValidationError as e:
            return e
        finally:
            connection.close()

    with ThreadPoolExecutor(max_workers=len(requests)) as workers:
        return list(workers.map(run, requests))


@pytest.mark.skipif(connection.vendor != "postgresql", reason="row locks need PostgreSQL")
@pytest.mark.django_db(transaction=True)
class TestConcurrentRequests:
    def test_concurrent_requests_get_distinct_positions(self, investor, other_investor, pool, fund):
        fund(investor, pool, 10_000_000)
        fund(other_investor, pool, 10_000_000)

        results = _queue_concurrently([
            (investor.pk, pool.pk, Shares(1_000_000)),
            (other_investor.pk, pool.pk, Shares(1_000_000)),
        ])

        assert sorted(r.queue_position for r in results) == [1, 2]

    def test_open_request_cap_holds_under_concurrency(self, investor, pool, target_pool, fund):
        fund(investor, pool, 100_000_000)
        fund(investor, target_pool, 100_000_000)
        service = RedemptionQueueService()
        for _ in range(MAX_PENDING_REDEMPTIONS - 1):
            service.queue_redemption(investor.pk, pool.pk, Shares(1_000_000))

        results = _queue_concurrently([
            (investor.pk, pool.pk, Shares(1_000_000)),
            (investor.pk, target_pool.pk, Shares(1_000_000)),
        ])

        assert sum(isinstance(r, ValidationError) for r in results) == 1
        assert RedemptionQueueEntry.objects.filter(investor=investor).count() == MAX_PENDING_REDEMPTIONS

    def test_concurrent_requests_cannot_overdraw(self, investor, pool, fund):
        fund(investor, pool, 1_000_000)

        results = _queue_concurrently([
            (investor.pk, pool.pk, Shares(1_000_000)),
            (investor.pk, pool.pk, Shares(1_000_000)),
        ])

        assert sum(isinstance(r, ValidationError) for r in results) == 1
        assert RedemptionQueueEntry.objects.count() == 1
