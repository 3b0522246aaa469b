# poolledger/apps/redemptions/models.py
import uuid
from django.db import models
from poolledger.apps.pools.models import AssetPool
from poolledger.apps.users.models import Investor
from poolledger.core.units import Shares, Usdc


class RedemptionStatus(models.TextChoices):
    QUEUED = "QUEUED", "Queued"
    PENDING_APPROVAL = "PENDING_APPROVAL", "Pending approval"
    APPROVED = "APPROVED", "Approved"
    REJECTED = "REJECTED", "Rejected"
    PROCESSING = "PROCESSING", "Processing"
    PARTIALLY_FILLED = "PARTIALLY_FILLED", "Partially filled"
    SETTLED = "SETTLED", "Settled"
    FAILED = "FAILED", "Failed"
    CANCELLED = "CANCELLED", "Cancelled"


# Entries in these states still hold their shares out of the available balance
NON_TERMINAL_STATUSES = (
    RedemptionStatus.QUEUED,
    RedemptionStatus.PENDING_APPROVAL,
    RedemptionStatus.APPROVED,
    RedemptionStatus.PROCESSING,
    RedemptionStatus.PARTIALLY_FILLED,
)
TERMINAL_STATUSES = (
    RedemptionStatus.SETTLED,
    RedemptionStatus.FAILED,
    RedemptionStatus.CANCELLED,
    RedemptionStatus.REJECTED,
)
CANCELLABLE_STATUSES = (RedemptionStatus.QUEUED, RedemptionStatus.PENDING_APPROVAL)
SETTLEABLE_STATUSES = (RedemptionStatus.QUEUED, RedemptionStatus.APPROVED)


class RedemptionQueueCounter(models.Model):
    """Last queue position issued per pool. Row-locked while a position is assigned."""

    pool = models.OneToOneField(
        AssetPool, on_delete=models.CASCADE, primary_key=True, related_name="queue_counter"
    )
    last_position = models.PositiveBigIntegerField(default=0)


class RedemptionQueueEntry(models.Model):
    """Redemption request with NAV locked at request time. Never deleted."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    investor = models.ForeignKey(Investor, on_delete=models.PROTECT, related_name="redemptions")
    pool = models.ForeignKey(AssetPool, on_delete=models.PROTECT, related_name="redemptions")
    shares = models.BigIntegerField()
    nav_at_request = models.BigIntegerField()
    estimated_amount = models.BigIntegerField()  # USDC at nav_at_request
    queue_position = models.PositiveBigIntegerField()
    settlement_date = models.DateTimeField(db_index=True)
    status = models.CharField(
        max_length=20, choices=RedemptionStatus.choices, default=RedemptionStatus.QUEUED, db_index=True
    )
    requires_approval = models.BooleanField(default=False)
    approved_by = models.CharField(max_length=64, null=True, blank=True)
    reason = models.TextField(null=True, blank=True)
    filled_shares = models.BigIntegerField(null=True, blank=True)
    tx_hash = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["pool", "queue_position"], name="redemption_unique_pool_position"),
            models.CheckConstraint(condition=models.Q(shares__gt=0), name="redemption_shares_positive"),
        ]
        indexes = [models.Index(fields=["pool", "status", "settlement_date"])]
        verbose_name_plural = "redemption queue entries"

    @property
    def share_amount(self) -> Shares:
        return Shares(self.shares)

    @property
    def estimate(self) -> Usdc:
        return Usdc(self.estimated_amount)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES
