"""
Tipjar Django Application Configuration
"""

from django.apps import AppConfig


class TipjarConfig(AppConfig):
    """
    Configuration class for the Tipjar Django application.

    Attributes:
        default_auto_field: Specifies BigAutoField for auto-generated primary keys
        name: The Python module name for this Django application
    """
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'tipjar'
