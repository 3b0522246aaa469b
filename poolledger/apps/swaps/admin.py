from django.contrib import admin
from .models import PoolSwap


@admin.register(PoolSwap)
class PoolSwapAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "investor",
        "source_pool",
        "target_pool",
        "shares_swapped",
        "target_shares",
        "fee",
        "slippage_bps",
        "status",
        "tx_hash",
        "created_at",
    )
    list_filter = ("status",)
    search_fields = ("id", "investor__email", "tx_hash")
    date_hierarchy = "created_at"
