import pytest

from poolledger.apps.pools.models import AssetPool, Investment
from poolledger.apps.users.models import Investor
from poolledger.core.units import NAV_BASE


@pytest.fixture
def investor(db):
    return Investor.objects.create(
        email="alice@example.com",
        display_name="Alice",
        wallet_address="0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
    )


@pytest.fixture
def other_investor(db):
    return Investor.objects.create(email="bob@example.com", display_name="Bob")


@pytest.fixture
def admin(db, settings):
    user = Investor.objects.create(email="admin@example.com", display_name="Admin", role="admin")
    settings.ADMIN_USER_IDS = [str(user.pk)]
    return user


@pytest.fixture
def pool(db):
    return AssetPool.objects.create(
        name="Invoice Pool A",
        chain_pool_id=1,
        nav_per_share=105_000_000,
        total_deposited=10_000_000_000,
        settlement_days=3,
    )


@pytest.fixture
def target_pool(db):
    return AssetPool.objects.create(
        name="Trade Finance Pool B",
        chain_pool_id=2,
        nav_per_share=105_000_000,
        total_deposited=5_000_000_000,
    )


@pytest.fixture
def fund():
    """Record a confirmed INVEST ledger event."""

    def _fund(investor, pool, shares, nav=NAV_BASE):
        return Investment.objects.create(
            investor=investor,
            pool=pool,
            type=Investment.TYPE_INVEST,
            amount=shares * nav // NAV_BASE,
            shares=shares,
            status=Investment.STATUS_CONFIRMED,
            share_price_at_event=nav,
        )

    return _fund
