from django.contrib import admin
from .models import Investor


@admin.register(Investor)
class InvestorAdmin(admin.ModelAdmin):
    list_display = ("id", "display_name", "email", "role", "smart_wallet_address", "wallet_address", "is_active")
    list_filter = ("role", "is_active")
    search_fields = ("email", "display_name", "wallet_address", "smart_wallet_address")
