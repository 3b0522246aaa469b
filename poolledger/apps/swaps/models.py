# poolledger/apps/swaps/models.py
import uuid
from django.db import models
from poolledger.apps.pools.models import AssetPool
from poolledger.apps.users.models import Investor


class SwapStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    BUILDING = "BUILDING", "Building"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE", "Awaiting signature"
    SUBMITTED = "SUBMITTED", "Submitted"
    CONFIRMED = "CONFIRMED", "Confirmed"
    FAILED = "FAILED", "Failed"
    CANCELLED = "CANCELLED", "Cancelled"


TERMINAL_SWAP_STATUSES = (SwapStatus.CONFIRMED, SwapStatus.FAILED, SwapStatus.CANCELLED)
CANCELLABLE_SWAP_STATUSES = (SwapStatus.PENDING, SwapStatus.BUILDING, SwapStatus.AWAITING_SIGNATURE)
EXECUTABLE_SWAP_STATUSES = (SwapStatus.BUILDING, SwapStatus.AWAITING_SIGNATURE)


class PoolSwap(models.Model):
    """Cross-pool swap with the quote snapshot it was built from. Never deleted."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    investor = models.ForeignKey(Investor, on_delete=models.PROTECT, related_name="swaps")
    source_pool = models.ForeignKey(AssetPool, on_delete=models.PROTECT, related_name="swaps_out")
    target_pool = models.ForeignKey(AssetPool, on_delete=models.PROTECT, related_name="swaps_in")
    shares_swapped = models.BigIntegerField()
    source_amount = models.BigIntegerField()  # USDC
    target_amount = models.BigIntegerField()  # USDC after fee
    target_shares = models.BigIntegerField()
    fee = models.BigIntegerField()  # USDC
    source_nav_at_swap = models.BigIntegerField()
    target_nav_at_swap = models.BigIntegerField()
    slippage_bps = models.PositiveIntegerField()
    min_output_amount = models.BigIntegerField()  # target shares floor
    status = models.CharField(
        max_length=20, choices=SwapStatus.choices, default=SwapStatus.PENDING, db_index=True
    )
    tx_hash = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    error_message = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["investor", "status", "created_at"])]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(source_pool=models.F("target_pool")),
                name="poolswap_distinct_pools",
            ),
        ]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_SWAP_STATUSES
