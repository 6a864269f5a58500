from __future__ import annotations

import logging

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

_production_settings_checked: bool = False


def ensure_production_settings() -> None:
    """Refuse to serve requests with development-only settings.

    This is intended to run once at web process startup (WSGI init), so
    management commands and the test runner can use the defaults.
    """

    global _production_settings_checked
    if _production_settings_checked:
        return

    if not settings.DEBUG:
        if str(settings.SECRET_KEY).startswith("django-insecure-dev-only"):
            raise ImproperlyConfigured("SECRET_KEY must be set in production.")
        if not settings.ALLOWED_HOSTS:
            raise ImproperlyConfigured("ALLOWED_HOSTS must be set in production.")
    else:
        logger.info("Startup: running with DEBUG enabled")

    _production_settings_checked = True
