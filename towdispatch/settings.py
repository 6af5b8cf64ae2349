"""
Django settings for the towdispatch project.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "towdispatch-dev-only-secret")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
    if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "towing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "towdispatch.urls"
WSGI_APPLICATION = "towdispatch.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DATABASE_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "loggers": {
        "towing": {
            "handlers": ["console"],
            "level": os.environ.get("TOWING_LOG_LEVEL", "INFO"),
        },
    },
}

# Dispatch, lifecycle and tracking policy.
TOWING_CONFIG = {
    "stale_request_hours": int(os.environ.get("TOWING_STALE_REQUEST_HOURS", "24")),
    "poll_interval_seconds": float(os.environ.get("TOWING_POLL_INTERVAL_SECONDS", "10")),
    "accept_window_seconds": float(os.environ.get("TOWING_ACCEPT_WINDOW_SECONDS", "30")),
    "follow_cooldown_seconds": 8.0,
    "heading_noise_floor_m": 5.0,
    "speed_window": 10,
    "speed_min_samples": 3,
    "speed_min_kmh": 1.0,
    "speed_max_kmh": 200.0,
    "speed_max_gap_seconds": 60.0,
    "fallback_speed_kmh": 40.0,
    "throttle_min_interval_seconds": 15.0,
    "throttle_max_interval_seconds": 60.0,
    "throttle_min_distance_m": 25.0,
    "marker_animation_seconds": 2.0,
    "commission_rate_percent": os.environ.get("TOWING_COMMISSION_RATE_PERCENT", "15"),
    "checklist_items": {
        "inicio": [
            {"name": "Vehicle correctly identified", "required": True},
            {"name": "Vehicle photos taken", "required": True},
            {"name": "Pre-existing damage documented", "required": False},
            {"name": "Client informed about the service", "required": True},
        ],
        "fim": [
            {"name": "Vehicle delivered at destination", "required": True},
            {"name": "Delivery photos taken", "required": True},
            {"name": "Client confirmed receipt", "required": False},
            {"name": "No damage during transport", "required": True},
        ],
    },
}

# External "compute quote" pricing function.
QUOTE_CONFIG = {
    "url": os.environ.get("QUOTE_FUNCTION_URL", ""),
    "api_key": os.environ.get("QUOTE_FUNCTION_API_KEY", ""),
    "service_token": os.environ.get("QUOTE_FUNCTION_SERVICE_TOKEN", ""),
    "timeout_seconds": float(os.environ.get("QUOTE_FUNCTION_TIMEOUT_SECONDS", "10")),
}
