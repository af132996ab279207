"""
Django settings for the billing reconciliation backend.

Values come from environment variables (optionally loaded from ``backend/.env``).
Billing policy knobs (rate-limit table, idempotency TTL, webhook dedup window)
live at the bottom of this module.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

env_path = BASE_DIR / ".env"
load_dotenv(env_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return int(value)


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [host.strip() for host in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if host.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "django_filters",
    "accounts",
    "billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "billing.middleware.rate_limit.RateLimitMiddleware",
    "billing.middleware.idempotency.IdempotencyMiddleware",
]

ROOT_URLCONF = "reconciler.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "reconciler.wsgi.application"
ASGI_APPLICATION = "reconciler.asgi.application"

DB_ENGINE = os.getenv("DB_ENGINE", "sqlite")

if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", "reconciler"),
            "USER": os.getenv("DB_USER", "postgres"),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", "localhost"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "CONN_MAX_AGE": _env_int("DB_CONN_MAX_AGE", 60),
            "OPTIONS": {
                "connect_timeout": _env_int("DB_CONNECT_TIMEOUT", 5),
                # Bounded statement time so a stuck store surfaces as an error
                "options": f"-c statement_timeout={_env_int('DATABASE_STATEMENT_TIMEOUT_MS', 5000)}",
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        }
    }

AUTH_USER_MODEL = "accounts.User"

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
        "rest_framework.filters.OrderingFilter",
    ],
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)

# Logging
BILLING_LOG_LEVEL = os.getenv("BILLING_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "console": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "console",
        },
    },
    "loggers": {
        "billing": {
            "handlers": ["console"],
            "level": BILLING_LOG_LEVEL,
            "propagate": False,
        },
        "accounts": {
            "handlers": ["console"],
            "level": BILLING_LOG_LEVEL,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
}

# ---------------------------------------------------------------------------
# Billing reconciliation policy
# ---------------------------------------------------------------------------

# Fixed-window request caps per endpoint category.
BILLING_RATE_LIMITS = {
    "auth": {"max_requests": 10, "window_minutes": 1},
    "sms": {"max_requests": 5, "window_minutes": 1},
    "checkin": {"max_requests": 10, "window_minutes": 1},
    "payment": {"max_requests": 5, "window_minutes": 1},
    "read": {"max_requests": 100, "window_minutes": 1},
    "write": {"max_requests": 30, "window_minutes": 1},
    "default": {"max_requests": 60, "window_minutes": 1},
}
BILLING_RATE_LIMIT_ENABLED = _env_bool("BILLING_RATE_LIMIT_ENABLED", True)
BILLING_RATE_LIMIT_EXEMPT_PATHS = ("/health/", "/metrics/", "/admin/")
BILLING_RATE_LIMIT_BUCKET_RETENTION_HOURS = _env_int("BILLING_RATE_LIMIT_BUCKET_RETENTION_HOURS", 1)

BILLING_IDEMPOTENCY_KEY_TTL_HOURS = _env_int("BILLING_IDEMPOTENCY_KEY_TTL_HOURS", 24)
BILLING_IDEMPOTENCY_PROTECTED_PATHS = (
    "/api/billing/subscriptions/",
    "/api/billing/subscription/cancel/",
    "/api/billing/subscription/payment-method/",
)

BILLING_WEBHOOK_SECRET = os.getenv("BILLING_WEBHOOK_SECRET", "")
BILLING_WEBHOOK_SIGNATURE_HEADER = os.getenv("BILLING_WEBHOOK_SIGNATURE_HEADER", "X-RevenueCat-Signature")
BILLING_WEBHOOK_DEDUP_WINDOW_HOURS = _env_int("BILLING_WEBHOOK_DEDUP_WINDOW_HOURS", 24)
BILLING_WEBHOOK_LOG_RETENTION_DAYS = _env_int("BILLING_WEBHOOK_LOG_RETENTION_DAYS", 90)

BILLING_GRACE_PERIOD_DAYS = _env_int("BILLING_GRACE_PERIOD_DAYS", 7)
BILLING_HTTP_TIMEOUT_SECONDS = _env_int("BILLING_HTTP_TIMEOUT_SECONDS", 10)

# Billing provider (subscriber state source of truth)
BILLING_PROVIDER_API_BASE = os.getenv("BILLING_PROVIDER_API_BASE", "https://api.revenuecat.com/v1")
BILLING_PROVIDER_SECRET_KEY = os.getenv("BILLING_PROVIDER_SECRET_KEY", "")

# Stripe (client-initiated subscription creation)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "")
STRIPE_MONTHLY_PRICE_ID = os.getenv("STRIPE_MONTHLY_PRICE_ID", "")
STRIPE_MONTHLY_PRICE_AMOUNT = _env_int("STRIPE_MONTHLY_PRICE_AMOUNT", 299)
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

# Notification gateways (fire-and-forget)
PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL", "")
PUSH_GATEWAY_API_KEY = os.getenv("PUSH_GATEWAY_API_KEY", "")
SMS_GATEWAY_URL = os.getenv("SMS_GATEWAY_URL", "")
SMS_GATEWAY_API_KEY = os.getenv("SMS_GATEWAY_API_KEY", "")
SMS_FROM_NUMBER = os.getenv("SMS_FROM_NUMBER", "")
