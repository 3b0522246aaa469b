"""
Fee Accrual Engine

Management fees accrue daily per pool (one row per pool per day).
Performance fees are charged per position on NAV gains above the
position's high watermark.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional
import logging

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured, ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from poolledger.apps.fees.models import (
    AccruedFee,
    DEFAULT_ENTRY_FEE_BPS,
    DEFAULT_EXIT_FEE_BPS,
    DEFAULT_MANAGEMENT_FEE_BPS,
    DEFAULT_PERFORMANCE_FEE_BPS,
    FeeConfig,
    MAX_ENTRY_FEE_BPS,
    MAX_EXIT_FEE_BPS,
    MAX_MANAGEMENT_FEE_BPS,
    MAX_PERFORMANCE_FEE_BPS,
    PositionHighWatermark,
)
from poolledger.apps.pools.models import AssetPool
from poolledger.apps.users.permissions import require_admin
from poolledger.core.units import (
    NAV_BASE,
    Nav,
    Shares,
    Usdc,
    apply_bps,
    daily_management_fee,
    shares_to_usdc,
)

logger = logging.getLogger(__name__)

FEE_BOUNDS = {
    "management_fee_bps": MAX_MANAGEMENT_FEE_BPS,
    "performance_fee_bps": MAX_PERFORMANCE_FEE_BPS,
    "entry_fee_bps": MAX_ENTRY_FEE_BPS,
    "exit_fee_bps": MAX_EXIT_FEE_BPS,
}


@dataclass(frozen=True)
class FeeAccrual:
    pool_id: int
    pool_name: str
    fee_type: str
    amount: Usdc
    period: str


@dataclass(frozen=True)
class PerformanceFeeResult:
    investor_id: int
    pool_id: int
    fee_amount: Usdc
    new_high_watermark: Nav


def _is_zero_address(address: Optional[str]) -> bool:
    return not address or address.lower() == settings.ZERO_ADDRESS


def _treasury_address() -> str:
    recipient = getattr(settings, "FEE_TREASURY_ADDRESS", "")
    if _is_zero_address(recipient):
        raise ImproperlyConfigured(
            "FEE_TREASURY_ADDRESS must be configured with a valid non-zero address"
        )
    return recipient


def validate_fee_bounds(values: dict) -> None:
    """Raise ValidationError for any fee outside [0, max] bps."""
    errors = {}
    for field, maximum in FEE_BOUNDS.items():
        if field not in values or values[field] is None:
            continue
        value = values[field]
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= maximum:
            errors[field] = f"{field} must be between 0 and {maximum} bps"
    if errors:
        raise ValidationError(errors)


class FeeService:
    """Fee configuration, daily management accrual and performance fees."""

    def __init__(self, using: str = "default"):
        self.using = using

    # ============================================================
    # CONFIG
    # ============================================================

    def _get_pool(self, pool_id) -> AssetPool:
        try:
            return AssetPool.objects.using(self.using).get(pk=pool_id)
        except AssetPool.DoesNotExist:
            raise ValidationError(f"Pool not found: {pool_id}")

    def get_or_create_fee_config(self, pool_id) -> FeeConfig:
        """Existing config for the pool, or a new one with default rates."""
        config = FeeConfig.objects.using(self.using).filter(pool_id=pool_id).first()
        if config:
            return config

        pool = self._get_pool(pool_id)
        recipient = _treasury_address()
        config, created = FeeConfig.objects.using(self.using).get_or_create(
            pool=pool,
            defaults={
                "management_fee_bps": DEFAULT_MANAGEMENT_FEE_BPS,
                "performance_fee_bps": DEFAULT_PERFORMANCE_FEE_BPS,
                "entry_fee_bps": DEFAULT_ENTRY_FEE_BPS,
                "exit_fee_bps": DEFAULT_EXIT_FEE_BPS,
                "fee_recipient": recipient,
            },
        )
        if created:
            logger.info(f"Created default fee config for pool {pool.name}")
        return config

    def update_fee_config(self, pool_id, admin_id, **updates) -> FeeConfig:
        """
        Update (or create) a pool's fee config. Admin only.

        Accepted keys: management_fee_bps, performance_fee_bps, entry_fee_bps,
        exit_fee_bps, fee_recipient.
        """
        require_admin(admin_id, using=self.using)

        unknown = set(updates) - set(FEE_BOUNDS) - {"fee_recipient"}
        if unknown:
            raise ValidationError(f"Unknown fee config fields: {', '.join(sorted(unknown))}")

        validate_fee_bounds(updates)
        if "fee_recipient" in updates and _is_zero_address(updates["fee_recipient"]):
            raise ValidationError("Fee recipient cannot be zero address")

        default_recipient = _treasury_address()
        pool = self._get_pool(pool_id)

        with transaction.atomic(using=self.using):
            config, created = FeeConfig.objects.using(self.using).select_for_update().get_or_create(
                pool=pool,
                defaults={
                    "management_fee_bps": updates.get("management_fee_bps", DEFAULT_MANAGEMENT_FEE_BPS),
                    "performance_fee_bps": updates.get("performance_fee_bps", DEFAULT_PERFORMANCE_FEE_BPS),
                    "entry_fee_bps": updates.get("entry_fee_bps", DEFAULT_ENTRY_FEE_BPS),
                    "exit_fee_bps": updates.get("exit_fee_bps", DEFAULT_EXIT_FEE_BPS),
                    "fee_recipient": updates.get("fee_recipient") or default_recipient,
                },
            )
            if not created and updates:
                for field, value in updates.items():
                    setattr(config, field, value)
                config.save(using=self.using, update_fields=[*updates, "updated_at"])

        logger.info(f"Fee config for pool {pool.name} updated by admin {admin_id}: {updates}")
        return config

    # ============================================================
    # MANAGEMENT FEES
    # ============================================================

    def calculate_daily_management_fee(self, total_deposited: Usdc, management_fee_bps: int) -> Usdc:
        """AUM * bps / 10000 / 365, floored, with scaled intermediate division."""
        return daily_management_fee(total_deposited, management_fee_bps)

    def accrue_management_fees(self) -> List[FeeAccrual]:
        """
        Accrue today's management fee for every active pool with deposits.

        Safe to call any number of times a day: the (pool, type, period)
        unique constraint admits one row per pool per day, and a run that
        loses the insert race skips the pool.
        """
        period = timezone.now().date().isoformat()
        results: List[FeeAccrual] = []

        pools = (
            AssetPool.objects.using(self.using)
            .filter(status=AssetPool.STATUS_ACTIVE, total_deposited__gt=0)
            .select_related("fee_config")
            .order_by("pk")
        )
        for pool in pools:
            already = AccruedFee.objects.using(self.using).filter(
                pool=pool, fee_type=AccruedFee.TYPE_MANAGEMENT, period=period
            ).exists()
            if already:
                continue

            config = getattr(pool, "fee_config", None)
            bps = config.management_fee_bps if config else DEFAULT_MANAGEMENT_FEE_BPS
            fee = self.calculate_daily_management_fee(pool.deposits, bps)
            if not fee.is_positive():
                continue

            try:
                with transaction.atomic(using=self.using):
                    AccruedFee.objects.using(self.using).create(
                        pool=pool,
                        fee_type=AccruedFee.TYPE_MANAGEMENT,
                        amount=fee.raw,
                        period=period,
                        status=AccruedFee.STATUS_PENDING,
                    )
            except IntegrityError:
                logger.info(f"Management fee for {pool.name} ({period}) accrued by a concurrent run")
                continue

            results.append(
                FeeAccrual(
                    pool_id=pool.pk,
                    pool_name=pool.name,
                    fee_type=AccruedFee.TYPE_MANAGEMENT,
                    amount=fee,
                    period=period,
                )
            )
        return results

    # ============================================================
    # PERFORMANCE FEES
    # ============================================================

    def calculate_performance_fee(
        self, investor_id, pool_id, shares: Shares, current_nav: Nav
    ) -> Optional[PerformanceFeeResult]:
        """
        Performance fee on the gain above the position's high watermark.

        The watermark row is locked for the duration of the transaction and
        raised to `current_nav` in the same transaction that computes the
        fee, so two concurrent callers cannot both charge the same gain.
        Returns None when `current_nav` is at or below the watermark.
        """
        if not shares.is_positive():
            raise ValidationError("Shares must be positive")
        if not current_nav.is_positive():
            raise ValidationError("NAV must be positive")

        config = self.get_or_create_fee_config(pool_id)

        with transaction.atomic(using=self.using):
            hwm, _ = PositionHighWatermark.objects.using(self.using).select_for_update().get_or_create(
                investor_id=investor_id,
                pool_id=pool_id,
                defaults={"high_watermark_nav": NAV_BASE},
            )
            watermark = Nav(hwm.high_watermark_nav)
            if current_nav <= watermark:
                return None

            total_gain = shares_to_usdc(shares, current_nav - watermark)
            fee = apply_bps(total_gain, config.performance_fee_bps)

            hwm.high_watermark_nav = current_nav.raw
            hwm.save(using=self.using, update_fields=["high_watermark_nav", "updated_at"])

        logger.info(
            f"Performance fee for investor {investor_id} in pool {pool_id}: {fee.raw} "
            f"(watermark {watermark.raw} -> {current_nav.raw})"
        )
        return PerformanceFeeResult(
            investor_id=investor_id,
            pool_id=pool_id,
            fee_amount=fee,
            new_high_watermark=current_nav,
        )

    def initialize_high_watermark(self, investor_id, pool_id, nav: Nav) -> PositionHighWatermark:
        """Record the entry NAV at first investment; an existing watermark is kept."""
        if not nav.is_positive():
            raise ValidationError("NAV must be positive")
        hwm, _ = PositionHighWatermark.objects.using(self.using).get_or_create(
            investor_id=investor_id,
            pool_id=pool_id,
            defaults={"high_watermark_nav": nav.raw},
        )
        return hwm

    # ============================================================
    # COLLECTION
    # ============================================================

    def get_pending_fees(self, pool_id=None):
        fees = AccruedFee.objects.using(self.using).filter(status=AccruedFee.STATUS_PENDING)
        if pool_id is not None:
            fees = fees.filter(pool_id=pool_id)
        return list(fees.select_related("pool").order_by("created_at"))

    def mark_fees_collected(self, fee_ids: Iterable, tx_hash: str) -> int:
        """PENDING -> COLLECTED for the given rows; returns the number updated."""
        if not tx_hash:
            raise ValidationError("A collection transaction hash is required")
        updated = (
            AccruedFee.objects.using(self.using)
            .filter(pk__in=list(fee_ids), status=AccruedFee.STATUS_PENDING)
            .update(status=AccruedFee.STATUS_COLLECTED, tx_hash=tx_hash)
        )
        logger.info(f"Marked {updated} fee(s) collected (tx: {tx_hash})")
        return updated

    def get_pool_fee_summary(self, pool_id) -> dict:
        config = self.get_or_create_fee_config(pool_id)
        totals = {
            row["status"]: row
            for row in AccruedFee.objects.using(self.using)
            .filter(pool_id=pool_id)
            .order_by()
            .values("status")
            .annotate(total=Sum("amount"), count=Count("id"))
        }

        def bucket(status):
            row = totals.get(status, {})
            return {"total": Usdc(row.get("total") or 0), "count": row.get("count", 0)}

        return {
            "pool_id": pool_id,
            "fee_config": {
                "management_fee_bps": config.management_fee_bps,
                "performance_fee_bps": config.performance_fee_bps,
                "entry_fee_bps": config.entry_fee_bps,
                "exit_fee_bps": config.exit_fee_bps,
                "fee_recipient": config.fee_recipient,
            },
            "pending_fees": bucket(AccruedFee.STATUS_PENDING),
            "collected_fees": bucket(AccruedFee.STATUS_COLLECTED),
        }
