"""
ASGI config for the notification delivery service.

This configuration supports:
- HTTP requests via Django
- The channel layer used by the in-app transport to push notifications
  to each user's notifications_<user_id> group

Realtime consumers that subscribe browsers to those groups are mounted
by the host application; this service only publishes to the layer.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/asgi/
"""

import os

from django.core.asgi import get_asgi_application

# Set the default Django settings module for the ASGI application
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# Initialize Django ASGI application early to ensure settings are loaded
# before importing any models or other Django components
django_asgi_app = get_asgi_application()

# Import Channels components after Django is initialized
from channels.routing import ProtocolTypeRouter  # noqa: E402

application = ProtocolTypeRouter(
    {
        "http": django_asgi_app,
    }
)
