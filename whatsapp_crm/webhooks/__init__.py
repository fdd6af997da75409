"""
Inbound webhooks.

- twilio_webhook: WhatsApp messages delivered by Twilio
"""

from .twilio_webhook import InboundWebhookHandler, get_webhook_handler, media_kind

__all__ = ["InboundWebhookHandler", "get_webhook_handler", "media_kind"]
