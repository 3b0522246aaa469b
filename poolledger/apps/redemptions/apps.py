from django.apps import AppConfig


class RedemptionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "poolledger.apps.redemptions"
    label = "redemptions"
    verbose_name = "Redemption Queue"
