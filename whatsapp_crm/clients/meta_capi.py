"""
Meta Conversions API (CAPI) Client

Sends server-side Purchase events to Meta so purchases recorded in the CRM
are attributed back to Click-to-WhatsApp ads through ``ctwa_clid``.

Docs: https://developers.facebook.com/docs/marketing-api/conversions-api
"""

import logging
import hashlib
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import httpx

from ..config import CRMSettings, get_crm_settings, CAPI_EVENTS

logger = logging.getLogger(__name__)


class MetaCAPIClient:
    """
    Client for Meta Conversions API.

    Failures never raise: the returned dict carries an ``error`` key instead,
    so callers can record the outcome on the purchase.
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        test_event_code: Optional[str] = None,
        api_version: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize CAPI client.

        Args:
            pixel_id: Meta Pixel (dataset) ID
            access_token: Access token with CAPI permissions
            test_event_code: Test event code (for development)
            api_version: Graph API version (default from settings)
            http_client: Preconfigured client (tests inject a mock transport)
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.test_event_code = test_event_code

        self.api_version = api_version or get_crm_settings().meta_api_version
        self.base_url = f"https://graph.facebook.com/{self.api_version}"

        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Hashing Helpers (Required for user data matching)
    # =========================================================================

    @staticmethod
    def hash_value(value: str) -> str:
        """Hash a value using SHA256 (required by CAPI)."""
        if not value:
            return ""
        normalized = value.lower().strip()
        return hashlib.sha256(normalized.encode()).hexdigest()

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Digits only, country code included."""
        if not phone:
            return ""
        return "".join(c for c in phone if c.isdigit())

    # =========================================================================
    # Event Sending
    # =========================================================================

    async def send_event(
        self,
        event_name: str,
        event_id: Optional[str] = None,
        event_time: Optional[datetime] = None,
        phone: Optional[str] = None,
        click_id: Optional[str] = None,  # ctwa_clid from Click-to-WhatsApp
        value: Optional[float] = None,
        currency: str = "ARS",
    ) -> Dict[str, Any]:
        """
        Send a conversion event to Meta CAPI.

        Args:
            event_name: Event type (Purchase, Lead)
            event_id: Deduplication id (the purchase id)
            event_time: When the event occurred
            phone: Customer phone number (hashed before sending)
            click_id: CTWA click ID for attribution
            value: Event value
            currency: Currency code

        Returns:
            API response, or ``{"error": ...}`` on failure
        """
        client = await self._get_client()

        user_data: Dict[str, Any] = {}
        if phone:
            user_data["ph"] = [self.hash_value(self.normalize_phone(phone))]

        # Not hashed
        if click_id:
            user_data["ctwa_clid"] = click_id

        event_data: Dict[str, Any] = {
            "event_name": event_name,
            "event_time": int((event_time or datetime.now(timezone.utc)).timestamp()),
            "action_source": "business_messaging",
            "messaging_channel": "whatsapp",
            "user_data": user_data,
        }
        if event_id:
            event_data["event_id"] = event_id

        if value is not None:
            event_data["custom_data"] = {"value": value, "currency": currency}

        payload: Dict[str, Any] = {
            "data": [event_data],
            "access_token": self.access_token,
        }
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code

        url = f"{self.base_url}/{self.pixel_id}/events"

        try:
            response = await client.post(url, json=payload)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"CAPI request failed: {e}")
            return {"error": str(e)}

        if response.status_code != 200:
            logger.error(f"CAPI error: {result}")
            message = result.get("error", {}).get("message") if isinstance(result, dict) else None
            return {"error": message or f"HTTP {response.status_code}"}

        logger.info(
            f"CAPI event sent: {event_name}, "
            f"events_received: {result.get('events_received', 0)}"
        )
        return result

    async def send_purchase_event(
        self,
        value: float,
        phone: Optional[str] = None,
        click_id: Optional[str] = None,
        currency: str = "ARS",
        event_id: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Send a Purchase event (customer made a purchase)."""
        return await self.send_event(
            event_name=CAPI_EVENTS["purchase"],
            event_id=event_id,
            event_time=event_time,
            phone=phone,
            click_id=click_id,
            value=value,
            currency=currency,
        )


# =============================================================================
# Factory Functions
# =============================================================================


def create_capi_client(settings: Optional[CRMSettings] = None) -> Optional[MetaCAPIClient]:
    """
    Create a CAPI client from settings.

    Returns None (with a warning) when the pixel or token is missing.
    """
    settings = settings or get_crm_settings()

    if not settings.meta_pixel_id or not settings.meta_capi_access_token:
        logger.warning("CONFIGURATION_MISSING: CAPI not configured - events will not be sent")
        return None

    return MetaCAPIClient(
        pixel_id=settings.meta_pixel_id,
        access_token=settings.meta_capi_access_token,
        test_event_code=settings.meta_capi_test_code,
    )
