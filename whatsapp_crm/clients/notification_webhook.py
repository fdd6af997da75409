"""
Outbound notification webhook (Zapier)

Posts inbound-message and purchase events as JSON to a single configured
URL. Notifications are best effort: a missing URL or a failed request is
logged and never surfaces to the caller.
"""

import logging
from typing import Optional, Dict, Any
import httpx

from ..config import CRMSettings, get_crm_settings

logger = logging.getLogger(__name__)


class NotificationWebhookClient:
    """Fire-and-log JSON POSTs to the notification URL."""

    def __init__(
        self,
        url: Optional[str],
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, payload: Dict[str, Any]) -> bool:
        """
        POST a payload.

        Returns:
            True if the endpoint answered with a 2xx status
        """
        if not self.url:
            logger.warning("CONFIGURATION_MISSING: notification webhook URL not set, skipping")
            return False

        client = await self._get_client()
        try:
            response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Notification webhook failed: {e}")
            return False

        if response.is_success:
            logger.debug(f"Notification webhook answered {response.status_code}")
            return True

        logger.warning(f"Notification webhook returned {response.status_code}: {response.text[:200]}")
        return False

    async def notify_message(
        self,
        contact_id: str,
        name: Optional[str],
        from_: str,
        to: str,
        message: str,
        timestamp: int,
        inbox_id: str,
        attribution: Optional[Dict[str, Optional[str]]] = None,
        customer_code: Optional[str] = None,
    ) -> bool:
        """Notify an inbound message."""
        attribution = attribution or {}
        return await self.send({
            "wa_id": contact_id,
            "name": name,
            "from": from_,
            "to": to,
            "message": message,
            "timestamp": timestamp,
            "source_type": attribution.get("source_type"),
            "source_url": attribution.get("source_url"),
            "campaign_id": attribution.get("campaign_id"),
            "adset_id": attribution.get("adset_id"),
            "ad_id": attribution.get("ad_id"),
            "ctwa_clid": attribution.get("ctwa_clid"),
            "customer_code": customer_code,
            "inbox_id": inbox_id,
        })

    async def notify_purchase(
        self,
        contact_id: str,
        amount: float,
        currency: str,
        created_at: str,
        customer_code: Optional[str] = None,
        name: Optional[str] = None,
    ) -> bool:
        """Notify a recorded purchase."""
        return await self.send({
            "waId": contact_id,
            "amount": amount,
            "currency": currency,
            "timestamp": created_at,
            "customer_code": customer_code,
            "name": name,
        })


# Convenience function
def create_notification_client(settings: Optional[CRMSettings] = None) -> NotificationWebhookClient:
    """Create a notification client from settings."""
    settings = settings or get_crm_settings()
    return NotificationWebhookClient(
        url=settings.notification_webhook_url,
        timeout=settings.notification_timeout,
    )
