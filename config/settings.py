import os
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default=False):
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes')


SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'catalog-sync-dev-key')
DEBUG = _env_bool('DJANGO_DEBUG', False)
ALLOWED_HOSTS = os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost').split(',')

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'catalog_sync',
]

if os.getenv('POSTGRES_DB'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ['POSTGRES_DB'],
            'USER': os.getenv('POSTGRES_USER', 'postgres'),
            'PASSWORD': os.getenv('POSTGRES_PASSWORD', ''),
            'HOST': os.getenv('POSTGRES_HOST', 'localhost'),
            'PORT': os.getenv('POSTGRES_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
            # Worker threads need a test database they can all open.
            'TEST': {'NAME': os.getenv('SQLITE_TEST_PATH', str(BASE_DIR / 'test_db.sqlite3'))},
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

# ---------------------------------------------------------------------------
# Celery
# ---------------------------------------------------------------------------

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_BEAT_SCHEDULE = {
    'nightly-catalog-sync': {
        'task': 'catalog_sync.sync_all_suppliers',
        'schedule': crontab(hour=2, minute=0),
    },
}

# ---------------------------------------------------------------------------
# Catalog sync
# ---------------------------------------------------------------------------

PROMIDATA_BASE_URL = os.getenv(
    'PROMIDATA_BASE_URL',
    'https://promi-dl.de/Profiles/Live/849c892e-b443-4f49-be3a-61a351cbdd23',
)

CATALOG_SYNC_WORKERS = int(os.getenv('CATALOG_SYNC_WORKERS', '4'))
CATALOG_SYNC_EAGER = _env_bool('CATALOG_SYNC_EAGER', False)
CATALOG_SYNC_MAX_ATTEMPTS = int(os.getenv('CATALOG_SYNC_MAX_ATTEMPTS', '3'))
CATALOG_SYNC_LEASE_TIMEOUT = float(os.getenv('CATALOG_SYNC_LEASE_TIMEOUT', '300'))
CATALOG_SYNC_JOB_BACKOFF_BASE = float(os.getenv('CATALOG_SYNC_JOB_BACKOFF_BASE', '10'))
CATALOG_SYNC_JOB_BACKOFF_MAX = float(os.getenv('CATALOG_SYNC_JOB_BACKOFF_MAX', '300'))

CATALOG_SYNC_FETCH_MAX_RETRIES = int(os.getenv('CATALOG_SYNC_FETCH_MAX_RETRIES', '3'))
CATALOG_SYNC_FETCH_BASE_DELAY = float(os.getenv('CATALOG_SYNC_FETCH_BASE_DELAY', '1.0'))
CATALOG_SYNC_FETCH_MAX_DELAY = float(os.getenv('CATALOG_SYNC_FETCH_MAX_DELAY', '30.0'))
CATALOG_SYNC_RATE_LIMIT = int(os.getenv('CATALOG_SYNC_RATE_LIMIT', '5'))

# Bulk manifest downloads are much larger than single product documents.
CATALOG_SYNC_MANIFEST_TIMEOUT = float(os.getenv('CATALOG_SYNC_MANIFEST_TIMEOUT', '60'))
CATALOG_SYNC_DOCUMENT_TIMEOUT = float(os.getenv('CATALOG_SYNC_DOCUMENT_TIMEOUT', '30'))
CATALOG_SYNC_SINK_TIMEOUT = float(os.getenv('CATALOG_SYNC_SINK_TIMEOUT', '15'))

CATALOG_SYNC_SEARCH_BACKEND = os.getenv('CATALOG_SYNC_SEARCH_BACKEND', 'memory')
MEILISEARCH_URL = os.getenv('MEILISEARCH_URL', 'http://localhost:7700')
MEILISEARCH_API_KEY = os.getenv('MEILISEARCH_API_KEY', '')
MEILISEARCH_INDEX = os.getenv('MEILISEARCH_INDEX', 'products')

CATALOG_SYNC_RAG_BACKEND = os.getenv('CATALOG_SYNC_RAG_BACKEND', 'memory')
RAG_STORE_URL = os.getenv('RAG_STORE_URL', 'http://localhost:8080')
RAG_STORE_API_KEY = os.getenv('RAG_STORE_API_KEY', '')

CATALOG_SYNC_HEALTH_MAX_AGE_HOURS = float(os.getenv('CATALOG_SYNC_HEALTH_MAX_AGE_HOURS', '26'))
CATALOG_SYNC_HEALTH_MAX_FAILURE_RATIO = float(os.getenv('CATALOG_SYNC_HEALTH_MAX_FAILURE_RATIO', '0.1'))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'default': {
            'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'default',
        },
    },
    'loggers': {
        'catalog_sync': {
            'handlers': ['console'],
            'level': os.getenv('CATALOG_SYNC_LOG_LEVEL', 'INFO'),
            'propagate': True,
        },
    },
}
