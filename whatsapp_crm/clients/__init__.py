"""
External clients.

- meta_capi: Meta Conversions API (purchase attribution)
- notification_webhook: outbound JSON webhook (Zapier)
"""

from .meta_capi import MetaCAPIClient, create_capi_client
from .notification_webhook import NotificationWebhookClient, create_notification_client

__all__ = [
    "MetaCAPIClient",
    "create_capi_client",
    "NotificationWebhookClient",
    "create_notification_client",
]
