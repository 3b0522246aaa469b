# poolledger/apps/fees/models.py
import uuid
from django.db import models
from poolledger.apps.pools.models import AssetPool
from poolledger.apps.users.models import Investor
from poolledger.core.units import NAV_BASE

# Safety bounds (bps), enforced by the service and by the table itself
MAX_MANAGEMENT_FEE_BPS = 500  # 5%
MAX_PERFORMANCE_FEE_BPS = 2000  # 20%
MAX_ENTRY_FEE_BPS = 200  # 2%
MAX_EXIT_FEE_BPS = 500  # 5%

DEFAULT_MANAGEMENT_FEE_BPS = 50  # 0.5% annually
DEFAULT_PERFORMANCE_FEE_BPS = 1000  # 10% of gains above the watermark
DEFAULT_ENTRY_FEE_BPS = 0
DEFAULT_EXIT_FEE_BPS = 10  # 0.1%


class FeeConfig(models.Model):
    pool = models.OneToOneField(AssetPool, on_delete=models.CASCADE, related_name="fee_config")
    management_fee_bps = models.PositiveIntegerField(default=DEFAULT_MANAGEMENT_FEE_BPS)
    performance_fee_bps = models.PositiveIntegerField(default=DEFAULT_PERFORMANCE_FEE_BPS)
    entry_fee_bps = models.PositiveIntegerField(default=DEFAULT_ENTRY_FEE_BPS)
    exit_fee_bps = models.PositiveIntegerField(default=DEFAULT_EXIT_FEE_BPS)
    fee_recipient = models.CharField(max_length=64)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(management_fee_bps__lte=MAX_MANAGEMENT_FEE_BPS),
                name="feeconfig_management_fee_bound",
            ),
            models.CheckConstraint(
                condition=models.Q(performance_fee_bps__lte=MAX_PERFORMANCE_FEE_BPS),
                name="feeconfig_performance_fee_bound",
            ),
            models.CheckConstraint(
                condition=models.Q(entry_fee_bps__lte=MAX_ENTRY_FEE_BPS),
                name="feeconfig_entry_fee_bound",
            ),
            models.CheckConstraint(
                condition=models.Q(exit_fee_bps__lte=MAX_EXIT_FEE_BPS),
                name="feeconfig_exit_fee_bound",
            ),
        ]


class AccruedFee(models.Model):
    """One row per pool, fee type and period. Never rewritten once created."""

    TYPE_MANAGEMENT = "MANAGEMENT"
    TYPE_PERFORMANCE = "PERFORMANCE"
    TYPE = [(TYPE_MANAGEMENT, "Management"), (TYPE_PERFORMANCE, "Performance")]

    STATUS_PENDING = "PENDING"
    STATUS_COLLECTED = "COLLECTED"
    STATUS = [(STATUS_PENDING, "Pending"), (STATUS_COLLECTED, "Collected")]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    pool = models.ForeignKey(AssetPool, on_delete=models.PROTECT, related_name="accrued_fees")
    fee_type = models.CharField(max_length=16, choices=TYPE, db_index=True)
    amount = models.BigIntegerField()  # USDC
    period = models.CharField(max_length=10)  # YYYY-MM-DD
    status = models.CharField(max_length=16, choices=STATUS, default=STATUS_PENDING, db_index=True)
    tx_hash = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["pool", "fee_type", "period"], name="accruedfee_unique_pool_type_period"
            ),
        ]
        ordering = ["created_at"]


class PositionHighWatermark(models.Model):
    investor = models.ForeignKey(Investor, on_delete=models.CASCADE, related_name="high_watermarks")
    pool = models.ForeignKey(AssetPool, on_delete=models.CASCADE, related_name="high_watermarks")
    high_watermark_nav = models.BigIntegerField(default=NAV_BASE)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [("investor", "pool")]
