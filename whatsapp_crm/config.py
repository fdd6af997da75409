"""
WhatsApp CRM Configuration

Settings for the key-value store, inbox routing, the outbound notification
webhook and the Conversions API (CAPI) used for purchase attribution.
"""

from pydantic_settings import BaseSettings
from typing import Optional, Dict


# =============================================================================
# Inboxes
# =============================================================================

# Inbox id -> WhatsApp number that receives messages for it.
DEFAULT_INBOX_NUMBERS = {
    "ventas": "+15077065642",
    "soporte": "+15077065643",
}


# =============================================================================
# CAPI Event Types
# =============================================================================

CAPI_EVENTS = {
    "lead": "Lead",
    "purchase": "Purchase",
}


# =============================================================================
# Settings Class
# =============================================================================


class CRMSettings(BaseSettings):
    """Settings for the WhatsApp CRM service."""

    # ==========================================================================
    # Key-Value Store
    # ==========================================================================

    redis_url: str = "redis://localhost:6379"

    # Per-call socket timeout; expiry surfaces as a transient storage error
    redis_socket_timeout: float = 5.0

    # Prepended to every key (e.g. "tenant-a:"); empty keeps the legacy layout
    crm_key_prefix: str = ""

    # ==========================================================================
    # Inboxes
    # ==========================================================================

    default_inbox_id: str = "ventas"
    inbox_numbers: Dict[str, str] = DEFAULT_INBOX_NUMBERS

    # ==========================================================================
    # Twilio inbound webhook
    # ==========================================================================

    twilio_auth_token_ventas: Optional[str] = None
    twilio_auth_token_soporte: Optional[str] = None

    # Reject webhooks whose X-Twilio-Signature does not match
    twilio_validate_signature: bool = False

    # ==========================================================================
    # Outbound notification webhook (Zapier)
    # ==========================================================================

    notification_webhook_url: Optional[str] = None
    notification_timeout: float = 10.0

    # ==========================================================================
    # Meta Conversions API (CAPI)
    # ==========================================================================

    meta_api_version: str = "v22.0"
    meta_pixel_id: Optional[str] = None
    meta_capi_access_token: Optional[str] = None
    meta_capi_test_code: Optional[str] = None

    # Purchases are only reported when explicitly enabled
    capi_reporting_enabled: bool = False

    # ==========================================================================
    # Attribution & Stats
    # ==========================================================================

    # Recent messages scanned when resolving a click id for a contact
    attribution_scan_window: int = 10

    # Recent messages included in the inspect report
    inspect_scan_window: int = 20

    stats_timezone: str = "America/Argentina/Buenos_Aires"

    # ==========================================================================
    # General Settings
    # ==========================================================================

    # Base URL used to rebuild webhook URLs for signature checks
    app_base_url: str = "http://localhost:8000"

    log_level: str = "INFO"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"

    def twilio_auth_token_for(self, inbox_id: str) -> Optional[str]:
        """Auth token of the Twilio account behind an inbox."""
        return {
            "ventas": self.twilio_auth_token_ventas,
            "soporte": self.twilio_auth_token_soporte,
        }.get(inbox_id)


# Singleton instance
_settings: Optional[CRMSettings] = None


def get_crm_settings() -> CRMSettings:
    """Get the CRM settings singleton."""
    global _settings
    if _settings is None:
        _settings = CRMSettings()
    return _settings


# =============================================================================
# Helper Functions
# =============================================================================


def is_notification_configured(settings: Optional[CRMSettings] = None) -> bool:
    """Check if the outbound notification webhook is configured."""
    settings = settings or get_crm_settings()
    return bool(settings.notification_webhook_url)


def is_capi_configured(settings: Optional[CRMSettings] = None) -> bool:
    """Check if CAPI is configured for attribution."""
    settings = settings or get_crm_settings()
    return bool(settings.meta_pixel_id and settings.meta_capi_access_token)
