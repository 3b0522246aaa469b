from datetime import datetime, timezone as dt_timezone
from unittest import mock

import pytest
from django.core.exceptions import ImproperlyConfigured, PermissionDenied, ValidationError

from poolledger.apps.fees.models import AccruedFee, FeeConfig, PositionHighWatermark
from poolledger.apps.fees.services.fee_accrual import FeeService
from poolledger.apps.pools.models import AssetPool
from poolledger.core.units import NAV_BASE, Nav, Shares, Usdc

pytestmark = pytest.mark.django_db


@pytest.fixture
def service():
    return FeeService()


class TestFeeConfig:
    def test_created_lazily_with_defaults(self, service, pool, settings):
        config = service.get_or_create_fee_config(pool.pk)
        assert (config.management_fee_bps, config.performance_fee_bps) == (50, 1000)
        assert (config.entry_fee_bps, config.exit_fee_bps) == (0, 10)
        assert config.fee_recipient == settings.FEE_TREASURY_ADDRESS
        assert service.get_or_create_fee_config(pool.pk).pk == config.pk

    def test_missing_pool(self, service):
        with pytest.raises(ValidationError):
            service.get_or_create_fee_config(9999)

    @pytest.mark.parametrize("address", ["", "0x0000000000000000000000000000000000000000"])
    def test_treasury_must_be_configured(self, service, pool, settings, address):
        settings.FEE_TREASURY_ADDRESS = address
        with pytest.raises(ImproperlyConfigured):
            service.get_or_create_fee_config(pool.pk)
        assert not FeeConfig.objects.exists()

    def test_update_requires_admin(self, service, pool, investor, admin):
        with pytest.raises(PermissionDenied):
            service.update_fee_config(pool.pk, investor.pk, management_fee_bps=100)

    def test_update_within_bounds(self, service, pool, admin):
        config = service.update_fee_config(pool.pk, admin.pk, management_fee_bps=100, exit_fee_bps=0)
        config.refresh_from_db()
        assert config.management_fee_bps == 100
        assert config.exit_fee_bps == 0
        assert config.performance_fee_bps == 1000

    @pytest.mark.parametrize(
        "updates",
        [
            {"management_fee_bps": 501},
            {"performance_fee_bps": 2001},
            {"entry_fee_bps": 201},
            {"exit_fee_bps": -1},
            {"fee_recipient": "0x0000000000000000000000000000000000000000"},
            {"unknown_bps": 1},
        ],
    )
    def test_update_rejects_invalid_values(self, service, pool, admin, updates):
        service.get_or_create_fee_config(pool.pk)
        with pytest.raises(ValidationError):
            service.update_fee_config(pool.pk, admin.pk, **updates)
        config = FeeConfig.objects.get(pool=pool)
        assert config.management_fee_bps == 50
        assert config.exit_fee_bps == 10


class TestManagementFees:
    def test_daily_fee(self, service):
        assert service.calculate_daily_management_fee(Usdc(10_000_000_000), 50) == Usdc(136_986)

    def test_accrual_is_idempotent_per_day(self, service, pool):
        first = service.accrue_management_fees()
        second = service.accrue_management_fees()

        assert [a.amount for a in first] == [Usdc(136_986)]
        assert second == []
        fee = AccruedFee.objects.get()
        assert fee.fee_type == AccruedFee.TYPE_MANAGEMENT
        assert fee.status == AccruedFee.STATUS_PENDING
        assert fee.amount == 136_986

    def test_period_is_the_current_date(self, service, pool):
        frozen = datetime(2026, 3, 14, 12, 0, tzinfo=dt_timezone.utc)
        with mock.patch("poolledger.apps.fees.services.fee_accrual.timezone.now", return_value=frozen):
            accruals = service.accrue_management_fees()
        assert accruals[0].period == "2026-03-14"

    def test_skips_inactive_and_empty_pools(self, service, pool):
        AssetPool.objects.create(name="Paused", chain_pool_id=7, status=AssetPool.STATUS_PAUSED, total_deposited=10**10)
        AssetPool.objects.create(name="Empty", chain_pool_id=8, total_deposited=0)
        accruals = service.accrue_management_fees()
        assert [a.pool_id for a in accruals] == [pool.pk]

    def test_uses_pool_rate(self, service, pool, admin):
        service.update_fee_config(pool.pk, admin.pk, management_fee_bps=0)
        assert service.accrue_management_fees() == []


class TestPerformanceFees:
    def test_fee_charged_on_gain_above_watermark(self, service, investor, pool):
        result = service.calculate_performance_fee(investor.pk, pool.pk, Shares(100_000_000), Nav(110_000_000))

        assert result.fee_amount == Usdc(1_000_000)
        assert result.new_high_watermark == Nav(110_000_000)
        hwm = PositionHighWatermark.objects.get(investor=investor, pool=pool)
        assert hwm.high_watermark_nav == 110_000_000

    def test_no_fee_at_or_below_watermark(self, service, investor, pool):
        service.calculate_performance_fee(investor.pk, pool.pk, Shares(100_000_000), Nav(110_000_000))

        assert service.calculate_performance_fee(investor.pk, pool.pk, Shares(100_000_000), Nav(110_000_000)) is None
        assert service.calculate_performance_fee(investor.pk, pool.pk, Shares(100_000_000), Nav(104_000_000)) is None
        hwm = PositionHighWatermark.objects.get(investor=investor, pool=pool)
        assert hwm.high_watermark_nav == 110_000_000

    def test_rejects_non_positive_inputs(self, service, investor, pool):
        with pytest.raises(ValidationError):
            service.calculate_performance_fee(investor.pk, pool.pk, Shares(0), Nav(NAV_BASE))
        with pytest.raises(ValidationError):
            service.calculate_performance_fee(investor.pk, pool.pk, Shares(1), Nav(0))

    def test_initialize_keeps_existing_watermark(self, service, investor, pool):
        service.initialize_high_watermark(investor.pk, pool.pk, Nav(102_000_000))
        hwm = service.initialize_high_watermark(investor.pk, pool.pk, Nav(120_000_000))
        assert hwm.high_watermark_nav == 102_000_000


class TestCollection:
    def test_mark_collected(self, service, pool):
        service.accrue_management_fees()
        fee_ids = [f.pk for f in service.get_pending_fees(pool.pk)]

        assert service.mark_fees_collected(fee_ids, "0xabc") == 1
        assert service.mark_fees_collected(fee_ids, "0xdef") == 0
        assert service.get_pending_fees() == []
        assert AccruedFee.objects.get().tx_hash == "0xabc"

    def test_mark_collected_requires_tx_hash(self, service, pool):
        service.accrue_management_fees()
        with pytest.raises(ValidationError):
            service.mark_fees_collected([f.pk for f in service.get_pending_fees()], "")

    def test_summary(self, service, pool):
        service.accrue_management_fees()
        summary = service.get_pool_fee_summary(pool.pk)
        assert summary["fee_config"]["management_fee_bps"] == 50
        assert summary["pending_fees"] == {"total": Usdc(136_986), "count": 1}
        assert summary["collected_fees"] == {"total": Usdc(0), "count": 0}
