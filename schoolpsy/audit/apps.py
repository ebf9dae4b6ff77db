from django.apps import AppConfig


class AuditConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'schoolpsy.audit'
    label = 'schoolpsy_audit'
    verbose_name = 'Audit'
