import logging
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

application = get_wsgi_application()

logger = logging.getLogger(__name__)

try:
    from voting.startup import ensure_production_settings

    ensure_production_settings()
except Exception:
    logger.exception("Startup settings check failed")
    raise
