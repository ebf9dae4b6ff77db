"""
Django settings for schoolpsy.
"""
from pathlib import Path

from decouple import config, Csv

BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config('SECRET_KEY', default='dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config('DEBUG', default=False, cast=bool)

ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

# Application definition
DJANGO_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
]

SCHOOLPSY_APPS = [
    'schoolpsy.children',
    'schoolpsy.audit',
    'schoolpsy.modules',
]

INSTALLED_APPS = DJANGO_APPS + SCHOOLPSY_APPS

# Database
DB_ENGINE = config('DB_ENGINE', default='django.db.backends.postgresql')
DB_CONNECT_TIMEOUT = config('DB_CONNECT_TIMEOUT', default=10, cast=int)

if DB_ENGINE == 'django.db.backends.sqlite3':
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default=str(BASE_DIR / 'schoolpsy.sqlite3')),
            'OPTIONS': {
                'timeout': DB_CONNECT_TIMEOUT,
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default='schoolpsy'),
            'USER': config('DB_USER', default='postgres'),
            'PASSWORD': config('DB_PASSWORD', default='password'),
            'HOST': config('DB_HOST', default='localhost'),
            'PORT': config('DB_PORT', default='5432'),
            'OPTIONS': {
                'connect_timeout': DB_CONNECT_TIMEOUT,
            },
        }
    }

# Cache
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'schoolpsy',
    }
}

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = config('TIME_ZONE', default='UTC')
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Test module system
SCHOOLPSY_MODULES = {
    'PATHS': config(
        'SCHOOLPSY_MODULE_PATHS',
        default=str(BASE_DIR / 'test_modules'),
        cast=Csv(),
    ),
    'CORE_VERSION': '1.0.0',
    'CAPABILITIES': ['json', 'sql', 'date'],
    'BACKUP_PATH': config(
        'SCHOOLPSY_BACKUP_PATH',
        default=str(BASE_DIR / 'storage' / 'backups' / 'modules'),
    ),
    'BLACKLIST': config('SCHOOLPSY_MODULE_BLACKLIST', default='', cast=Csv()),
    'CACHE_DISCOVERY': config('SCHOOLPSY_CACHE_DISCOVERY', default=True, cast=bool),
    'CACHE_TTL': 3600,
    'TABLE_TEMPLATE': 'test_{key}_results',
    'MAX_TEST_AGE_YEARS': 10,
    'CHILD_OWNERSHIP_CHECK': 'schoolpsy.children.services.child_belongs_to_psychologist',
    'CATEGORIES': {
        'emotional': {
            'name': 'Emotional sphere',
            'description': 'Tests diagnosing emotional state',
            'color': '#3b82f6',
            'icon': 'heart',
        },
        'cognitive': {
            'name': 'Cognitive sphere',
            'description': 'Tests assessing cognitive abilities',
            'color': '#10b981',
            'icon': 'brain',
        },
        'personality': {
            'name': 'Personality traits',
            'description': 'Tests diagnosing personality characteristics',
            'color': '#8b5cf6',
            'icon': 'user',
        },
        'interpersonal': {
            'name': 'Interpersonal relations',
            'description': 'Tests assessing social relationships',
            'color': '#f59e0b',
            'icon': 'users',
        },
        'career': {
            'name': 'Career guidance',
            'description': 'Tests for vocational orientation',
            'color': '#ef4444',
            'icon': 'briefcase',
        },
        'general': {
            'name': 'General tests',
            'description': 'General psychological methods',
            'color': '#6b7280',
            'icon': 'clipboard-list',
        },
    },
}

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'schoolpsy': {
            'handlers': ['console'],
            'level': config('SCHOOLPSY_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
    },
}
