"""
Settings used by ``manage.py test`` and pytest-django.

Fills in the secrets the main settings expect, swaps Postgres for in-memory
SQLite and removes the tutor retry backoff.
"""

import os

# Placeholder secrets; the tutor is always mocked in tests
if not os.getenv('GEMINI_API_KEY'):
    os.environ['GEMINI_API_KEY'] = 'test-dummy-key-12345'

if not os.getenv('SECRET_KEY'):
    os.environ['SECRET_KEY'] = 'test-secret-key-django-testing-only'

# Import all settings from the main settings module
from .settings import *  # noqa: F403, F401

# SQLite keeps the test suite free of an external database server
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

# No backoff between tutor retries in tests
MENTOR_TUTOR_RETRY_BACKOFF = 0.0
