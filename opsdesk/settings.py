from pathlib import Path
import sys
import os
from dotenv import load_dotenv
import dj_database_url
from corsheaders.defaults import default_headers

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Shared core apps live in company_core for reuse across projects.
CORE_DIR = BASE_DIR / "company_core"
if CORE_DIR.exists() and str(CORE_DIR) not in sys.path:
    sys.path.insert(0, str(CORE_DIR))

# Load environment variables from .env (default) or .env.example (fallback)
_env_file = os.getenv("ENV_FILE")
if _env_file:
    # Load an explicit env file first (e.g. for CI or alternate configs).
    # Then load .env.example as a "defaults" layer (does not override).
    load_dotenv(_env_file)
    load_dotenv(BASE_DIR / '.env.example', override=False)
else:
    load_dotenv(BASE_DIR / '.env')
    load_dotenv(BASE_DIR / '.env.example', override=False)


def _env_truthy(value, default=False):
    """Return True when the provided environment value represents truthy."""

    if value is None:
        return default
    return str(value).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_strip(value):
    return value.strip() if value else ''


def _env_int(name, default):
    try:
        parsed = int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-local-development-key')

DEBUG = _env_truthy(os.getenv('DEBUG'), True)

_allowed_hosts_env = os.getenv('ALLOWED_HOSTS')
ALLOWED_HOSTS = (
    [h.strip() for h in _allowed_hosts_env.split(',') if h.strip()]
    if _allowed_hosts_env
    else ['localhost', '127.0.0.1', 'testserver']
)

# CSRF trusted origins (comma-separated) e.g. https://ops.example.com
_csrf_env = os.getenv('CSRF_TRUSTED_ORIGINS', '')
CSRF_TRUSTED_ORIGINS = [o.strip() for o in _csrf_env.split(',') if o.strip()] or [
    'http://localhost:8000',
    'http://127.0.0.1:8000',
]

# Application definition

INSTALLED_APPS = [
    'django.contrib.staticfiles',
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'corsheaders',
    'rest_framework',
    'rest_framework.authtoken',
    'crm',
    'billing',
    'api',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

# Only the public intake site may call the API cross-origin.
CORS_ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv('CORS_ALLOWED_ORIGINS', '').split(',') if o.strip()
]
CORS_URLS_REGEX = r'^/api/.*$'
CORS_ALLOW_CREDENTIALS = True
CORS_ALLOW_HEADERS = (*default_headers, 'x-api-key')

# Shared secret the intake site sends as X-Api-Key when posting leads.
EXTERNAL_API_KEY = _env_strip(os.getenv('EXTERNAL_API_KEY', ''))

ROOT_URLCONF = 'opsdesk.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [os.path.join(BASE_DIR, 'templates')],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'opsdesk.wsgi.application'

# Database
# https://docs.djangoproject.com/en/5.0/ref/settings/#databases

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

# Enable DATABASE_URL parsing when provided; fallback stays SQLite
_clean_db_url = os.getenv('DATABASE_URL', '').strip().strip('"').strip("'")
if _clean_db_url:
    DATABASES['default'] = dj_database_url.parse(
        _clean_db_url,
        conn_max_age=600,
        ssl_require=_env_truthy(os.getenv('DB_SSL_REQUIRE'), False),
    )

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
        'OPTIONS': {
            'min_length': 8,
        }
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.TokenAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'EXCEPTION_HANDLER': 'api.exceptions.billing_exception_handler',
}

# Internationalization
# https://docs.djangoproject.com/en/5.0/topics/i18n/

LANGUAGE_CODE = 'en-us'

TIME_ZONE = os.getenv('TIME_ZONE', 'UTC')

USE_I18N = True

USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = os.path.join(BASE_DIR, 'staticfiles')

if not DEBUG:
    STORAGES = {
        'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
        'staticfiles': {'BACKEND': 'whitenoise.storage.StaticFilesStorage'},
    }
    WHITENOISE_MANIFEST_STRICT = False
    SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True
    SECURE_SSL_REDIRECT = _env_truthy(os.getenv('SECURE_SSL_REDIRECT'), False)

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Outbound email (invoice delivery). All customer notifications are sent from here;
# the payment processor never emails customers directly.
EMAIL_BACKEND = os.getenv('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.getenv('EMAIL_HOST', 'localhost')
EMAIL_USE_TLS = _env_truthy(os.getenv('EMAIL_USE_TLS'), True)
EMAIL_PORT = _env_int('EMAIL_PORT', 587)
EMAIL_HOST_USER = _env_strip(os.getenv('EMAIL_HOST_USER', ''))
EMAIL_HOST_PASSWORD = _env_strip(os.getenv('EMAIL_HOST_PASSWORD', ''))
EMAIL_TIMEOUT = _env_int('EMAIL_TIMEOUT', 20)
DEFAULT_FROM_EMAIL = os.getenv('DEFAULT_FROM_EMAIL', 'billing@opsdesk.local')
BILLING_FROM_EMAIL = os.getenv('BILLING_FROM_EMAIL', DEFAULT_FROM_EMAIL)
BILLING_BRAND_NAME = os.getenv('BILLING_BRAND_NAME', 'OpsDesk').strip() or 'OpsDesk'
DEFAULT_NET_TERMS_DAYS = _env_int('DEFAULT_NET_TERMS_DAYS', 30)

# OpenAI configuration (keep keys out of source control)
OPENAI_API_KEY = _env_strip(os.getenv('OPENAI_API_KEY', ''))
OPENAI_BASE_URL = _env_strip(os.getenv('OPENAI_BASE_URL', ''))
OPENAI_ORG = _env_strip(os.getenv('OPENAI_ORG', ''))
OPENAI_PROJECT = _env_strip(os.getenv('OPENAI_PROJECT', ''))
OPENAI_PRICING_MODEL = os.getenv('OPENAI_PRICING_MODEL', 'gpt-4o-mini').strip() or 'gpt-4o-mini'
OPENAI_TIMEOUT_SECONDS = _env_int('OPENAI_TIMEOUT_SECONDS', 30)

STRIPE_SECRET_KEY = _env_strip(os.getenv('STRIPE_SECRET_KEY', ''))
STRIPE_PUBLISHABLE_KEY = _env_strip(os.getenv('STRIPE_PUBLISHABLE_KEY', ''))
STRIPE_WEBHOOK_SECRET = _env_strip(os.getenv('STRIPE_WEBHOOK_SECRET', ''))
STRIPE_TIMEOUT_SECONDS = _env_int('STRIPE_TIMEOUT_SECONDS', 20)
STRIPE_CURRENCY = os.getenv('STRIPE_CURRENCY', 'usd').strip().lower() or 'usd'

LOG_TO_FILE = _env_truthy(os.getenv('LOG_TO_FILE'), False)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
        **({
            'file': {
                'level': 'INFO',
                'class': 'logging.FileHandler',
                'filename': os.path.join(BASE_DIR, 'logs', 'billing.log'),
                'formatter': 'simple',
            }
        } if LOG_TO_FILE else {})
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'billing': {
            'handlers': ['file'] if LOG_TO_FILE else ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}
