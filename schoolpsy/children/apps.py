from django.apps import AppConfig


class ChildrenConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'schoolpsy.children'
    label = 'schoolpsy_children'
    verbose_name = 'Children'
