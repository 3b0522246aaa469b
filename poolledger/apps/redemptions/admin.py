from django.contrib import admin
from .models import RedemptionQueueEntry, RedemptionQueueCounter


@admin.register(RedemptionQueueEntry)
class RedemptionQueueEntryAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "investor",
        "pool",
        "queue_position",
        "shares",
        "nav_at_request",
        "estimated_amount",
        "settlement_date",
        "status",
        "tx_hash",
    )
    list_filter = ("status", "pool", "requires_approval")
    search_fields = ("id", "investor__email", "tx_hash")
    date_hierarchy = "created_at"
    ordering = ("pool", "queue_position")


@admin.register(RedemptionQueueCounter)
class RedemptionQueueCounterAdmin(admin.ModelAdmin):
    list_display = ("pool", "last_position")
