"""Django settings for the protocol handoff service."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [host for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "apps.common",
    "apps.instances",
    "apps.protocols",
    "apps.workers.apps.WorkersConfig",
]

MIDDLEWARE: list[str] = []
ROOT_URLCONF = "config.urls"

if os.environ.get("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ["POSTGRES_DB"],
            "USER": os.environ.get("POSTGRES_USER", "postgres"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", ""),
            "HOST": os.environ.get("POSTGRES_HOST", "localhost"),
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("LOG_LEVEL", "INFO"),
    },
}

# Protocols
PROTOCOL_NUMBER_PREFIX = os.environ.get("PROTOCOL_NUMBER_PREFIX", "CPR")
PROTOCOL_DEFAULT_CHANNEL = os.environ.get("PROTOCOL_DEFAULT_CHANNEL", "whatsapp")
LEARNING_CONTEXT_TURNS = _env_int("LEARNING_CONTEXT_TURNS", 5)

# Session poller
SESSION_POLL_INTERVAL_SECONDS = _env_int("SESSION_POLL_INTERVAL_SECONDS", 15)
SESSION_POLLER_AUTOSTART = _env_bool("SESSION_POLLER_AUTOSTART", False)
PROTOCOL_CREATION_WINDOW_HOURS = _env_int("PROTOCOL_CREATION_WINDOW_HOURS", 24)
ESCALATION_CHECK_WINDOW_MINUTES = _env_int("ESCALATION_CHECK_WINDOW_MINUTES", 5)
ESCALATION_GUARD_TTL_MINUTES = _env_int("ESCALATION_GUARD_TTL_MINUTES", 30)
SURVEY_CHECK_WINDOW_MINUTES = _env_int("SURVEY_CHECK_WINDOW_MINUTES", 60)

# Agent runtime gateway
AGENT_RUNTIME_URL_TEMPLATE = os.environ.get(
    "AGENT_RUNTIME_URL_TEMPLATE", "http://{host}:18790/containers/{container}"
)
AGENT_RUNTIME_TOKEN = os.environ.get("AGENT_RUNTIME_TOKEN", "")
AGENT_RUNTIME_TIMEOUT_SECONDS = _env_int("AGENT_RUNTIME_TIMEOUT_SECONDS", 10)
AGENT_RUNTIME_TRANSCRIPT_TAIL = _env_int("AGENT_RUNTIME_TRANSCRIPT_TAIL", 200)

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_POLL_SESSIONS_SECONDS = _env_int("CELERY_POLL_SESSIONS_SECONDS", SESSION_POLL_INTERVAL_SECONDS)
CELERY_BEAT_SCHEDULE = {
    "poll-protocol-sessions": {
        "task": "apps.workers.tasks.poll_protocol_sessions",
        "schedule": timedelta(seconds=CELERY_POLL_SESSIONS_SECONDS),
    },
}
