from django.contrib import admin
from .models import FeeConfig, AccruedFee, PositionHighWatermark


@admin.register(FeeConfig)
class FeeConfigAdmin(admin.ModelAdmin):
    list_display = (
        "pool",
        "management_fee_bps",
        "performance_fee_bps",
        "entry_fee_bps",
        "exit_fee_bps",
        "fee_recipient",
        "updated_at",
    )


@admin.register(AccruedFee)
class AccruedFeeAdmin(admin.ModelAdmin):
    list_display = ("pool", "fee_type", "period", "amount", "status", "tx_hash")
    list_filter = ("fee_type", "status")
    search_fields = ("tx_hash", "pool__name", "period")


@admin.register(PositionHighWatermark)
class PositionHighWatermarkAdmin(admin.ModelAdmin):
    list_display = ("investor", "pool", "high_watermark_nav", "updated_at")
    search_fields = ("investor__email", "pool__name")
