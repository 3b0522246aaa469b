from django.apps import AppConfig


class PoolsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "poolledger.apps.pools"
    label = "pools"
    verbose_name = "Pools & Ledger"
