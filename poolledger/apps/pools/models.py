# poolledger/apps/pools/models.py
import uuid
from django.db import models
from poolledger.apps.users.models import Investor
from poolledger.core.units import NAV_BASE, Nav, Shares, Usdc


class AssetPool(models.Model):
    """Tokenized asset pool. NAV and status are written by external processes only."""

    STATUS_ACTIVE = "ACTIVE"
    STATUS_PAUSED = "PAUSED"
    STATUS_CLOSED = "CLOSED"
    STATUS = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_PAUSED, "Paused"),
        (STATUS_CLOSED, "Closed"),
    ]
    name = models.CharField(max_length=128)
    chain_pool_id = models.PositiveBigIntegerField(unique=True)
    nav_per_share = models.BigIntegerField(default=NAV_BASE)  # 8 decimals
    status = models.CharField(max_length=16, choices=STATUS, default=STATUS_ACTIVE, db_index=True)
    total_deposited = models.BigIntegerField(default=0)  # USDC, 6 decimals
    settlement_days = models.PositiveIntegerField(default=3)  # T+N
    # Redemptions estimated at or above this (USDC) need admin approval
    large_redemption_threshold = models.BigIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    @property
    def nav(self) -> Nav:
        return Nav(self.nav_per_share)

    @property
    def deposits(self) -> Usdc:
        return Usdc(self.total_deposited)


class Investment(models.Model):
    """
    Append-only ledger event. The sole source of truth for share balances:
    balance = sum(confirmed INVEST shares) - sum(confirmed REDEEM shares).
    """

    TYPE_INVEST = "INVEST"
    TYPE_REDEEM = "REDEEM"
    TYPE = [(TYPE_INVEST, "Invest"), (TYPE_REDEEM, "Redeem")]

    STATUS_PENDING = "PENDING"
    STATUS_CONFIRMED = "CONFIRMED"
    STATUS_FAILED = "FAILED"
    STATUS = [
        (STATUS_PENDING, "Pending"),
        (STATUS_CONFIRMED, "Confirmed"),
        (STATUS_FAILED, "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    investor = models.ForeignKey(Investor, on_delete=models.PROTECT, related_name="investments")
    pool = models.ForeignKey(AssetPool, on_delete=models.PROTECT, related_name="investments")
    type = models.CharField(max_length=8, choices=TYPE, db_index=True)
    amount = models.BigIntegerField()  # USDC
    shares = models.BigIntegerField()
    status = models.CharField(max_length=16, choices=STATUS, default=STATUS_CONFIRMED, db_index=True)
    tx_hash = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    share_price_at_event = models.BigIntegerField(null=True, blank=True)  # NAV
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["investor", "pool", "type", "status"])]
        constraints = [
            models.CheckConstraint(condition=models.Q(shares__gte=0), name="investment_shares_non_negative"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Ledger events are immutable")
        super().save(*args, **kwargs)

    @property
    def share_amount(self) -> Shares:
        return Shares(self.shares)
