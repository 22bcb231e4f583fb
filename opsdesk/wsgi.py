"""
WSGI config for the opsdesk project.

It exposes the WSGI callable as a module-level variable named ``application``.
"""

import logging
import os

from django.conf import settings
from django.core.wsgi import get_wsgi_application
from whitenoise import WhiteNoise

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'opsdesk.settings')

logger = logging.getLogger(__name__)

django_application = get_wsgi_application()

# Log which external integrations are configured. Only presence is logged, never the key.
logger.info(
    "Integrations configured: stripe=%s stripe_webhook=%s openai=%s",
    bool(getattr(settings, "STRIPE_SECRET_KEY", "")),
    bool(getattr(settings, "STRIPE_WEBHOOK_SECRET", "")),
    bool(getattr(settings, "OPENAI_API_KEY", "")),
)

# Serve collected static files (admin assets) from the process itself.
application = WhiteNoise(django_application)

static_root = getattr(settings, 'STATIC_ROOT', None)
if static_root:
    application.add_files(static_root, prefix='static/')
