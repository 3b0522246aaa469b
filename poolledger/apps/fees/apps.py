from django.apps import AppConfig


class FeesConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "poolledger.apps.fees"
    label = "fees"
    verbose_name = "Fees"
