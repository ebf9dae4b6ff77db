from django.apps import AppConfig


class ModulesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'schoolpsy.modules'
    label = 'schoolpsy_modules'
    verbose_name = 'Test Modules'

    def ready(self):
        # Register signal definitions
        from . import signals  # noqa: F401
