"""Django app configuration for the reporting module."""

from django.apps import AppConfig


class ReportingConfig(AppConfig):
    """Read-only listings, summaries, exports and TAT analytics."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'reporting'
    verbose_name = 'TAT Reporting'
