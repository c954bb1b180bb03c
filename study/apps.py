"""Django app configuration for the study workflow module."""

from django.apps import AppConfig


class StudyConfig(AppConfig):
    """Studies, doctors, labs and the status ledger."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'study'
    verbose_name = 'Study Workflow'
