"""
Pool Swap Service

Atomic pool-to-pool swaps through the investor's smart wallet:
redeem from the source pool, approve USDC, invest in the target pool,
all inside one executeBatch call.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured, PermissionDenied, ValidationError
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from poolledger.apps.pools.models import AssetPool, Investment
from poolledger.apps.pools.services.positions import get_position
from poolledger.apps.swaps.models import (
    CANCELLABLE_SWAP_STATUSES,
    EXECUTABLE_SWAP_STATUSES,
    TERMINAL_SWAP_STATUSES,
    PoolSwap,
    SwapStatus,
)
from poolledger.core.units import (
    BPS_DENOMINATOR,
    Nav,
    Shares,
    Usdc,
    apply_bps,
    format_shares,
    format_usdc,
    shares_to_usdc,
    usdc_to_shares,
)
from poolledger.onchain.batch_calls import BatchPayload, encode_swap_batch

logger = logging.getLogger(__name__)

QUOTE_EXPIRY = timedelta(minutes=5)
STALE_SWAP_AGE = QUOTE_EXPIRY * 2

DEFAULT_SLIPPAGE_BPS = 50  # 0.5%
MIN_SLIPPAGE_BPS = 0
MAX_SLIPPAGE_BPS = 1000  # 10%

# NAV sanity band: 0.01 to 1000.00
MIN_VALID_NAV = Nav(1_000_000)
MAX_VALID_NAV = Nav(100_000_000_000)


@dataclass(frozen=True)
class SwapQuote:
    source_pool_id: int
    target_pool_id: int
    shares_in: Shares
    source_nav: Nav
    target_nav: Nav
    source_amount: Usdc  # value of shares_in
    fee: Usdc
    target_amount: Usdc  # value after fee
    target_shares: Shares
    slippage_bps: int
    min_output_shares: Shares
    expires_at: datetime


@dataclass(frozen=True)
class BuildSwapResult:
    swap_id: str
    payload: BatchPayload
    source_pool_chain_id: int
    target_pool_chain_id: int
    quote: SwapQuote

    @property
    def call_data(self) -> str:
        return self.payload.call_data


@dataclass(frozen=True)
class SwapValidation:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class SwapResult:
    id: str
    status: str
    tx_hash: Optional[str]
    source_shares: Shares
    target_shares: Shares
    fee: Usdc


def swap_fee_bps() -> int:
    return int(getattr(settings, "SWAP_FEE_BPS", 25))


def compute_swap_amounts(shares: Shares, source_nav: Nav, target_nav: Nav) -> Tuple[Usdc, Usdc, Usdc, Shares]:
    """(source_amount, fee, target_amount, target_shares) at the given NAVs."""
    source_amount = shares_to_usdc(shares, source_nav)
    fee = apply_bps(source_amount, swap_fee_bps())
    target_amount = source_amount - fee
    return source_amount, fee, target_amount, usdc_to_shares(target_amount, target_nav)


def _nav_in_band(nav: Nav) -> bool:
    return MIN_VALID_NAV <= nav <= MAX_VALID_NAV


def _configured_address(name: str) -> str:
    value = getattr(settings, name, "")
    if not value or value.lower() == settings.ZERO_ADDRESS:
        raise ImproperlyConfigured(f"{name} not configured")
    return value


class SwapService:
    def __init__(self, using: str = "default"):
        self.using = using

    def _swaps(self):
        return PoolSwap.objects.using(self.using)

    def _get_swap(self, swap_id, for_update=False) -> PoolSwap:
        qs = self._swaps()
        if for_update:
            qs = qs.select_for_update()
        try:
            return qs.get(pk=swap_id)
        except (PoolSwap.DoesNotExist, ValidationError):
            raise ValidationError("Swap not found")

    def _get_pool(self, pool_id, label: str) -> AssetPool:
        try:
            return AssetPool.objects.using(self.using).get(pk=pool_id)
        except (AssetPool.DoesNotExist, ValueError, TypeError):
            raise ValidationError(f"{label} pool not found")

    # ============================================================
    # QUOTES
    # ============================================================

    def get_swap_quote(
        self,
        investor_id,
        source_pool_id,
        target_pool_id,
        shares: Shares,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
    ) -> SwapQuote:
        """Price a swap at current NAVs. The quote is valid for five minutes."""
        if not shares.is_positive():
            raise ValidationError("Shares must be positive")
        if not MIN_SLIPPAGE_BPS <= slippage_bps <= MAX_SLIPPAGE_BPS:
            raise ValidationError(
                f"Slippage must be between {MIN_SLIPPAGE_BPS} and {MAX_SLIPPAGE_BPS} bps"
            )
        if str(source_pool_id) == str(target_pool_id):
            raise ValidationError("Source and target pools must be different")

        source_pool = self._get_pool(source_pool_id, "Source")
        target_pool = self._get_pool(target_pool_id, "Target")
        if not source_pool.is_active:
            raise ValidationError("Source pool is not active")
        if not target_pool.is_active:
            raise ValidationError("Target pool is not active")

        available = get_position(investor_id, source_pool.pk, using=self.using).available_shares
        if available < shares:
            raise ValidationError(
                f"Insufficient shares. Have {format_shares(available)}, want to swap {format_shares(shares)}"
            )

        source_nav, target_nav = source_pool.nav, target_pool.nav
        if not _nav_in_band(source_nav):
            raise ValidationError(f"Source pool NAV {source_nav.raw} is outside valid range")
        if not _nav_in_band(target_nav):
            raise ValidationError(f"Target pool NAV {target_nav.raw} is outside valid range")

        source_amount, fee, target_amount, target_shares = compute_swap_amounts(
            shares, source_nav, target_nav
        )
        min_output_shares = apply_bps(target_shares, BPS_DENOMINATOR - slippage_bps)

        return SwapQuote(
            source_pool_id=source_pool.pk,
            target_pool_id=target_pool.pk,
            shares_in=shares,
            source_nav=source_nav,
            target_nav=target_nav,
            source_amount=source_amount,
            fee=fee,
            target_amount=target_amount,
            target_shares=target_shares,
            slippage_bps=slippage_bps,
            min_output_shares=min_output_shares,
            expires_at=timezone.now() + QUOTE_EXPIRY,
        )

    def build_swap_user_op(
        self,
        investor_id,
        source_pool_id,
        target_pool_id,
        shares: Shares,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
    ) -> BuildSwapResult:
        """
        Fresh quote, encoded executeBatch payload, and a BUILDING swap row
        holding the quote snapshot for pre-submission validation.
        """
        quote = self.get_swap_quote(investor_id, source_pool_id, target_pool_id, shares, slippage_bps)

        pool_address = _configured_address("POOL_CONTRACT_ADDRESS")
        usdc_address = _configured_address("USDC_ADDRESS")

        pools = AssetPool.objects.using(self.using).in_bulk([quote.source_pool_id, quote.target_pool_id])
        source_pool, target_pool = pools[quote.source_pool_id], pools[quote.target_pool_id]

        payload = encode_swap_batch(
            pool_address=pool_address,
            usdc_address=usdc_address,
            source_chain_pool_id=source_pool.chain_pool_id,
            target_chain_pool_id=target_pool.chain_pool_id,
            shares=shares.raw,
            invest_amount=quote.target_amount.raw,
        )

        swap = self._swaps().create(
            investor_id=investor_id,
            source_pool=source_pool,
            target_pool=target_pool,
            shares_swapped=shares.raw,
            source_amount=quote.source_amount.raw,
            target_amount=quote.target_amount.raw,
            target_shares=quote.target_shares.raw,
            fee=quote.fee.raw,
            source_nav_at_swap=quote.source_nav.raw,
            target_nav_at_swap=quote.target_nav.raw,
            slippage_bps=slippage_bps,
            min_output_amount=quote.min_output_shares.raw,
            status=SwapStatus.BUILDING,
        )
        logger.info(
            f"Built swap {swap.id}: {format_shares(shares)} shares {source_pool.name} -> "
            f"{target_pool.name} (fee {format_usdc(quote.fee)})"
        )
        return BuildSwapResult(
            swap_id=str(swap.id),
            payload=payload,
            source_pool_chain_id=source_pool.chain_pool_id,
            target_pool_chain_id=target_pool.chain_pool_id,
            quote=quote,
        )

    # ============================================================
    # VALIDATION
    # ============================================================

    def validate_swap_execution(self, swap_id) -> SwapValidation:
        """
        Check a built swap is still safe to submit: status, pool status,
        quote age, and output at current NAVs against the stored minimum.
        """
        try:
            swap = self._swaps().select_related("source_pool", "target_pool").get(pk=swap_id)
        except (PoolSwap.DoesNotExist, ValidationError):
            return SwapValidation(False, "Swap not found")

        if swap.status not in EXECUTABLE_SWAP_STATUSES:
            return SwapValidation(False, f"Invalid swap status: {swap.status}")
        if not swap.source_pool.is_active:
            return SwapValidation(False, "Source pool is no longer active")
        if not swap.target_pool.is_active:
            return SwapValidation(False, "Target pool is no longer active")

        if timezone.now() - swap.created_at > QUOTE_EXPIRY:
            return SwapValidation(False, "Swap quote has expired. Please get a new quote.")

        target_nav = swap.target_pool.nav
        if not target_nav.is_positive():
            return SwapValidation(False, "Target pool NAV is invalid")

        _, _, _, current_target_shares = compute_swap_amounts(
            Shares(swap.shares_swapped), swap.source_pool.nav, target_nav
        )
        min_output = Shares(swap.min_output_amount)
        if current_target_shares < min_output:
            return SwapValidation(
                False,
                f"Price moved beyond {swap.slippage_bps / 100}% slippage tolerance. "
                f"Expected at least {min_output.raw} shares, would receive "
                f"{current_target_shares.raw}. Please get a new quote.",
            )
        return SwapValidation(True)

    # ============================================================
    # TRANSITIONS
    # ============================================================

    def _transition(self, swap_id, allowed, status, **fields) -> PoolSwap:
        with transaction.atomic(using=self.using):
            swap = self._get_swap(swap_id, for_update=True)
            if swap.status not in allowed:
                raise ValidationError(f"Cannot move swap from {swap.status} to {status}")
            swap.status = status
            for name, value in fields.items():
                setattr(swap, name, value)
            swap.save(using=self.using, update_fields=["status", *fields, "updated_at"])
        return swap

    def mark_swap_awaiting_signature(self, swap_id) -> PoolSwap:
        return self._transition(
            swap_id, (SwapStatus.PENDING, SwapStatus.BUILDING), SwapStatus.AWAITING_SIGNATURE
        )

    def mark_swap_submitted(self, swap_id, tx_hash: Optional[str] = None) -> PoolSwap:
        return self._transition(swap_id, EXECUTABLE_SWAP_STATUSES, SwapStatus.SUBMITTED, tx_hash=tx_hash)

    def confirm_swap(self, swap_id, tx_hash: str) -> SwapResult:
        """
        CONFIRMED, plus the REDEEM and INVEST ledger events, in one transaction.
        """
        if not tx_hash:
            raise ValidationError("A transaction hash is required to confirm a swap")

        with transaction.atomic(using=self.using):
            swap = self._get_swap(swap_id, for_update=True)
            if swap.status in TERMINAL_SWAP_STATUSES:
                raise ValidationError(f"Cannot confirm swap in status {swap.status}")
            swap.status = SwapStatus.CONFIRMED
            swap.tx_hash = tx_hash
            swap.save(using=self.using, update_fields=["status", "tx_hash", "updated_at"])

            ledger = Investment.objects.using(self.using)
            ledger.create(
                investor_id=swap.investor_id,
                pool_id=swap.source_pool_id,
                type=Investment.TYPE_REDEEM,
                amount=swap.source_amount,
                shares=swap.shares_swapped,
                status=Investment.STATUS_CONFIRMED,
                tx_hash=tx_hash,
                share_price_at_event=swap.source_nav_at_swap,
            )
            ledger.create(
                investor_id=swap.investor_id,
                pool_id=swap.target_pool_id,
                type=Investment.TYPE_INVEST,
                amount=swap.target_amount,
                shares=swap.target_shares,
                status=Investment.STATUS_CONFIRMED,
                tx_hash=tx_hash,
                share_price_at_event=swap.target_nav_at_swap,
            )

        logger.info(f"Swap {swap.id} confirmed (tx: {tx_hash})")

        # Swap shares are not held out of the available balance, so queued
        # redemptions may now exceed what is left in the source pool
        available = get_position(swap.investor_id, swap.source_pool_id, using=self.using).available_shares
        if available.raw < 0:
            logger.warning(
                f"Swap {swap.id} left investor {swap.investor_id} over-committed in pool "
                f"{swap.source_pool_id}: available shares {format_shares(available)}"
            )

        return SwapResult(
            id=str(swap.id),
            status=swap.status,
            tx_hash=swap.tx_hash,
            source_shares=Shares(swap.shares_swapped),
            target_shares=Shares(swap.target_shares),
            fee=Usdc(swap.fee),
        )

    def fail_swap(self, swap_id, error: str) -> PoolSwap:
        non_terminal = [s for s in SwapStatus.values if s not in TERMINAL_SWAP_STATUSES]
        swap = self._transition(swap_id, non_terminal, SwapStatus.FAILED, error_message=error)
        logger.warning(f"Swap {swap.id} failed: {error}")
        return swap

    def cancel_swap(self, swap_id, investor_id) -> PoolSwap:
        with transaction.atomic(using=self.using):
            swap = self._get_swap(swap_id, for_update=True)
            if str(swap.investor_id) != str(investor_id):
                raise PermissionDenied("Not authorized")
            if swap.status not in CANCELLABLE_SWAP_STATUSES:
                raise ValidationError(f"Cannot cancel swap in status {swap.status}")
            swap.status = SwapStatus.CANCELLED
            swap.save(using=self.using, update_fields=["status", "updated_at"])
        return swap

    def cleanup_stale_swaps(self) -> int:
        """Cancel unresolved swaps older than twice the quote expiry."""
        threshold = timezone.now() - STALE_SWAP_AGE
        cleaned = self._swaps().filter(
            status__in=CANCELLABLE_SWAP_STATUSES, created_at__lt=threshold
        ).update(
            status=SwapStatus.CANCELLED,
            error_message="Quote expired - swap cancelled automatically",
            updated_at=timezone.now(),
        )
        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale swaps")
        return cleaned

    # ============================================================
    # READS
    # ============================================================

    def get_swap(self, swap_id) -> Optional[PoolSwap]:
        try:
            return self._swaps().select_related("source_pool", "target_pool").get(pk=swap_id)
        except (PoolSwap.DoesNotExist, ValidationError):
            return None

    def get_swap_history(self, investor_id, limit: int = 20) -> List[PoolSwap]:
        return list(
            self._swaps()
            .filter(investor_id=investor_id)
            .select_related("source_pool", "target_pool")
            .order_by("-created_at")[:limit]
        )

    def get_swap_stats(self, investor_id) -> dict:
        swaps = self._swaps().filter(investor_id=investor_id)
        confirmed = swaps.filter(status=SwapStatus.CONFIRMED)
        totals = confirmed.aggregate(fees=Sum("fee"), volume=Sum("source_amount"))
        return {
            "total_swaps": swaps.count(),
            "successful_swaps": confirmed.count(),
            "total_fees_paid": Usdc(totals["fees"] or 0),
            "total_volume_swapped": Usdc(totals["volume"] or 0),
        }
