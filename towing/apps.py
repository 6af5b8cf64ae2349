from django.apps import AppConfig


class TowingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "towing"
    verbose_name = "Towing dispatch"
