"""mentor.apps module.

Django application configuration for the *mentor* app used by the
**frenchmentor** project.
"""

from django.apps import AppConfig


class MentorConfig(AppConfig):
    """Django ``AppConfig`` for the **mentor** application."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'mentor'
