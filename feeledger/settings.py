"""
Django settings for feeledger project.

Scope:
- Schools and per-school receipt numbering settings
- Receipt number reservation (fee and installment domains)
- Fee and installment payment allocation
"""
import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


DEBUG = os.getenv('DJANGO_DEBUG', 'False').lower() in {'1', 'true', 'yes'}
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'change-this-secret-key-in-production-7d0b3f4c2a9e48e1b6a5c1f08e2d9b43',
)
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
    if host.strip()
]


INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'apps.core.schools.apps.SchoolsConfig',
    'apps.core.numbering.apps.NumberingConfig',
    'apps.core.fees.apps.FeesConfig',
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


ROOT_URLCONF = 'feeledger.urls'

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

WSGI_APPLICATION = 'feeledger.wsgi.application'


DATABASE_ENGINE = os.getenv('DATABASE_ENGINE', 'sqlite3')

if DATABASE_ENGINE == 'postgresql':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('DATABASE_NAME', 'feeledger'),
            'USER': os.getenv('DATABASE_USER', 'feeledger'),
            'PASSWORD': os.getenv('DATABASE_PASSWORD', ''),
            'HOST': os.getenv('DATABASE_HOST', 'localhost'),
            'PORT': os.getenv('DATABASE_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
            'OPTIONS': {
                # Writers take the database lock at BEGIN and wait for each other.
                'transaction_mode': 'IMMEDIATE',
                'timeout': int(os.getenv('DATABASE_TIMEOUT_SECONDS', '20')),
            },
            'TEST': {
                # File-backed so threads in TransactionTestCase share one database.
                'NAME': os.getenv('DATABASE_TEST_NAME', str(BASE_DIR / 'test_db.sqlite3')),
            },
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True


STATIC_URL = 'static/'


CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG
SECURE_SSL_REDIRECT = os.getenv('DJANGO_SECURE_SSL_REDIRECT', 'False').lower() in {'1', 'true', 'yes'}
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')


TEST_RUNNER = 'apps.core.test_runner.InstalledAppsOnlyDiscoverRunner'


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('FEELEDGER_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}


RECEIPT_RESERVATION_MAX_ATTEMPTS = int(os.getenv('RECEIPT_RESERVATION_MAX_ATTEMPTS', '3'))
RECEIPT_RESERVATION_BACKOFF_SECONDS = float(os.getenv('RECEIPT_RESERVATION_BACKOFF_SECONDS', '0.05'))
RECEIPT_LOCK_TIMEOUT_MS = int(os.getenv('RECEIPT_LOCK_TIMEOUT_MS', '5000'))
RECEIPT_ALLOW_FALLBACK = os.getenv('RECEIPT_ALLOW_FALLBACK', 'True').lower() in {'1', 'true', 'yes'}
RECEIPT_SETTINGS_AUTO_CREATE = os.getenv('RECEIPT_SETTINGS_AUTO_CREATE', 'True').lower() in {'1', 'true', 'yes'}
