from django.apps import AppConfig


class NumberingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core.numbering'
    label = 'numbering'
