"""Settings for the workflow microservice."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict
from urllib.parse import urlparse

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "workflow-service-secret-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() in {"1", "true", "yes"}
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.staticfiles",
    "rest_framework",
    "corsheaders",
    "workflows",
    "appforms",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "workflow_service.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
            ],
        },
    }
]

WSGI_APPLICATION = "workflow_service.wsgi.application"


def _database_settings() -> Dict[str, Dict[str, str]]:
    url = (
        os.environ.get("WORKFLOW_DATABASE_URL")
        or os.environ.get("DATABASE_URL")
        or "sqlite:///workflow.sqlite3"
    )
    parsed = urlparse(url)
    if parsed.scheme in {"postgres", "postgresql"}:
        return {
            "default": {
                "ENGINE": "django.db.backends.postgresql",
                "NAME": parsed.path.lstrip("/"),
                "USER": parsed.username or "",
                "PASSWORD": parsed.password or "",
                "HOST": parsed.hostname or "localhost",
                "PORT": str(parsed.port or 5432),
            }
        }

    if parsed.scheme == "sqlite":
        db_path = parsed.path[1:] if parsed.path.startswith("/") else parsed.path
        if not db_path:
            name = ":memory:"
        elif db_path.startswith("/"):
            name = db_path
        else:
            name = str(BASE_DIR / db_path)
        return {
            "default": {
                "ENGINE": "django.db.backends.sqlite3",
                "NAME": name,
            }
        }

    raise ValueError("Supported database URLs: postgresql:// or sqlite:///")


DATABASES = _database_settings()

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("TZ", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = str(BASE_DIR / "staticfiles")

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

CORS_ALLOW_ALL_ORIGINS = True

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "EXCEPTION_HANDLER": "workflows.exceptions.workflow_exception_handler",
}

LOG_LEVEL = os.environ.get("WORKFLOW_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "service": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "service"},
    },
    "loggers": {
        "workflows": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "appforms": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "celery": {"handlers": ["console"], "level": "WARNING"},
    },
}


def _broker_url() -> str:
    return (
        os.environ.get("WORKFLOW_BROKER_URL")
        or os.environ.get("CELERY_BROKER_URL")
        or "redis://localhost:6379/0"
    )


CELERY_BROKER_URL = _broker_url()
CELERY_TASK_DEFAULT_QUEUE = os.environ.get("WORKFLOW_QUEUE_NAME", "workflow_notifications")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_TASK_IGNORE_RESULT = True
CELERY_TASK_ACKS_LATE = True

if os.environ.get("CELERY_ALWAYS_EAGER", "false").lower() in {"1", "true", "yes"}:
    CELERY_TASK_ALWAYS_EAGER = True
    CELERY_TASK_EAGER_PROPAGATES = True

WORKFLOW_NOTIFICATION_HANDLER = os.environ.get(
    "WORKFLOW_NOTIFICATION_HANDLER", "workflows.notifications.deliver_transition_event"
)
WORKFLOW_NOTIFICATION_URL = os.environ.get("WORKFLOW_NOTIFICATION_URL", "")
WORKFLOW_NOTIFICATION_TIMEOUT = float(os.environ.get("WORKFLOW_NOTIFICATION_TIMEOUT", "5"))
