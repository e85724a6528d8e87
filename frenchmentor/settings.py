"""
Django settings for the frenchmentor project.

Secrets and deployment-specific values come from environment variables.
"""

import os
from pathlib import Path

import logfire

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ['SECRET_KEY']
DEBUG = os.getenv('DEBUG', 'False').lower() in ('1', 'true', 'yes')
ALLOWED_HOSTS = [h for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'mentor',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'frenchmentor.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('POSTGRES_DB', 'frenchmentor'),
        'USER': os.getenv('POSTGRES_USER', 'frenchmentor'),
        'PASSWORD': os.getenv('POSTGRES_PASSWORD', ''),
        'HOST': os.getenv('POSTGRES_HOST', 'localhost'),
        'PORT': os.getenv('POSTGRES_PORT', '5432'),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# ---------------------------------------------------------------------------
# Tutor
# ---------------------------------------------------------------------------

GEMINI_API_KEY = os.getenv('GEMINI_API_KEY')
MENTOR_TUTOR_MODEL = os.getenv('MENTOR_TUTOR_MODEL', 'gemini-2.5-flash')
MENTOR_TUTOR_MAX_ATTEMPTS = int(os.getenv('MENTOR_TUTOR_MAX_ATTEMPTS', '3'))
MENTOR_TUTOR_RETRY_BACKOFF = float(os.getenv('MENTOR_TUTOR_RETRY_BACKOFF', '1.0'))

# ---------------------------------------------------------------------------
# Sparks, missions and the dashboard
# ---------------------------------------------------------------------------

MENTOR_SPARKS = {
    'free_cost': 2,
    'pro_cost': 1,
    'free_cap': 10,
    'pro_cap': 999,
}
MENTOR_REFILL_WINDOWS = {
    'free_hours': 24,
    'pro_hours': 30 * 24,
}
MENTOR_REFUND_ON_CANCEL = False
MENTOR_MISSION_THRESHOLD = 3
MENTOR_ACCURACY_FLOOR = 40
MENTOR_ACCURACY_PENALTY = 2
MENTOR_TITLE_MAX_LENGTH = 30
MENTOR_DEFAULT_LANGUAGE = os.getenv('MENTOR_DEFAULT_LANGUAGE', 'English')

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {'format': '{levelname} {name}: {message}', 'style': '{'},
    },
    'handlers': {
        'console': {'class': 'logging.StreamHandler', 'formatter': 'simple'},
    },
    'loggers': {
        'mentor': {
            'handlers': ['console'],
            'level': os.getenv('MENTOR_LOG_LEVEL', 'INFO'),
        },
    },
}

logfire.configure(
    token=os.getenv('LOGFIRE_KEY'),
    service_name='frenchmentor',
    send_to_logfire='if-token-present',
    console=False,
)
logfire.instrument_pydantic_ai()
