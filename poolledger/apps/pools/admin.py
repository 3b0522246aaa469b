from django.contrib import admin
from .models import AssetPool, Investment


@admin.register(AssetPool)
class AssetPoolAdmin(admin.ModelAdmin):
    list_display = (
        "name",
        "chain_pool_id",
        "nav_per_share",
        "status",
        "total_deposited",
        "settlement_days",
        "large_redemption_threshold",
    )
    list_filter = ("status",)
    search_fields = ("name", "chain_pool_id")


@admin.register(Investment)
class InvestmentAdmin(admin.ModelAdmin):
    list_display = ("investor", "pool", "type", "amount", "shares", "status", "tx_hash", "created_at")
    list_filter = ("type", "status")
    search_fields = ("tx_hash", "investor__email")
    date_hierarchy = "created_at"

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
