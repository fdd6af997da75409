"""
Twilio Webhook Handler - inbound WhatsApp messages

Handles form-encoded message webhooks from Twilio:
- Inbox detection by receiving number
- Click-to-WhatsApp referrals (click id, source URL, campaign/adset/ad ids)
- Customer codes written by the customer
- Media attachments (image / pdf)
- Outbound notification and per-message attribution meta

Webhook URL: POST /api/webhook/twilio
Signature: X-Twilio-Signature (HMAC-SHA1 over URL + sorted params, base64)
"""

import base64
import hashlib
import hmac
import logging
import time
import uuid
from typing import Optional, Dict, Any, Mapping

from ..config import CRMSettings, get_crm_settings
from ..errors import ConfigurationMissingError, StorageUnavailableError
from ..models import ContactPatch, MediaKind, Message, MessageDirection, SourceType
from ..services.attribution_service import (
    classify_source,
    click_id_from_webhook,
    extract_customer_code,
    parse_ad_ids,
)
from ..services.conversation_service import ConversationService, detect_inbox
from ..storage import normalize_id

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def media_kind(content_type: Optional[str]) -> str:
    """``pdf`` for PDF content types, ``image`` otherwise."""
    if content_type and "pdf" in content_type.lower():
        return MediaKind.PDF.value
    return MediaKind.IMAGE.value


class InboundWebhookHandler:
    """
    Turns a Twilio webhook into a stored message and contact update.

    Duplicate deliveries (same MessageSid) are dropped before any side
    effect: no contact update, no notification, no meta write.
    """

    def __init__(
        self,
        conversations: ConversationService,
        notifier=None,
        settings: Optional[CRMSettings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            conversations: Records messages and refreshes contacts
            notifier: NotificationWebhookClient (None disables notifications)
            settings: CRM settings (default: process settings)
        """
        self.conversations = conversations
        self.notifier = notifier
        self.settings = settings or get_crm_settings()

    # =========================================================================
    # Signature
    # =========================================================================

    @staticmethod
    def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
        """Twilio request signature for a URL and its POST params."""
        data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
        digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
        return base64.b64encode(digest).decode()

    def verify_signature(self, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
        """
        Verify X-Twilio-Signature.

        The auth token is picked by the inbox the message was sent to.

        Args:
            url: Full webhook URL as configured in Twilio
            params: Form fields
            signature: X-Twilio-Signature header value

        Returns:
            True if signature is valid

        Raises:
            ConfigurationMissingError: No auth token for the target inbox
        """
        inbox_id = detect_inbox(params.get("To"), self.settings.inbox_numbers, self.settings.default_inbox_id)
        token = self.settings.twilio_auth_token_for(inbox_id)
        if not token:
            logger.warning(f"CONFIGURATION_MISSING: no Twilio auth token for inbox {inbox_id}")
            raise ConfigurationMissingError(message=f"No Twilio auth token for inbox {inbox_id}")

        if not signature:
            return False

        expected = self.compute_signature(token, url, params)
        return hmac.compare_digest(expected, signature)

    # =========================================================================
    # Processing
    # =========================================================================

    async def handle(self, fields: Mapping[str, str]) -> Optional[Message]:
        """
        Process one inbound message.

        Args:
            fields: Form fields of the webhook

        Returns:
            The stored message, or None for a duplicate delivery
        """
        from_ = fields.get("From") or ""
        to = fields.get("To") or ""
        body = fields.get("Body") or ""

        inbox_id = detect_inbox(to, self.settings.inbox_numbers, self.settings.default_inbox_id)
        contact_id = normalize_id(fields.get("WaId") or from_)
        message_sid = _clean(fields.get("MessageSid")) or _clean(fields.get("SmsMessageSid"))

        source_url = _clean(fields.get("ReferralSourceUrl"))
        ad_ids = parse_ad_ids(source_url)
        referral_source_type = _clean(fields.get("ReferralSourceType"))
        click_id = click_id_from_webhook(fields)
        customer_code = extract_customer_code(body)
        profile_name = _clean(fields.get("ProfileName"))

        try:
            num_media = int(fields.get("NumMedia") or 0)
        except ValueError:
            num_media = 0
        media_url = _clean(fields.get("MediaUrl0")) if num_media > 0 else None
        media_type = media_kind(fields.get("MediaContentType0")) if media_url else None

        existing = await self.conversations.contacts.get_fields(contact_id)

        patch = ContactPatch(
            display_name=profile_name,
            source_url=source_url,
            campaign_id=ad_ids.campaign_id,
            adset_id=ad_ids.adset_id,
            ad_id=ad_ids.ad_id,
            customer_code=customer_code,
            click_id=click_id,
            source_type=classify_source(existing, click_id),
        )

        message = Message(
            id=message_sid or str(uuid.uuid4()),
            from_=from_,
            to=to,
            text=body,
            timestamp=int(time.time() * 1000),
            direction=MessageDirection.IN,
            inbox_id=inbox_id,
            media_url=media_url,
            media_type=media_type,
        )

        contact = await self.conversations.record_message(contact_id, message, patch, dedupe_key=message_sid)
        if contact is None:
            return None

        final_code = customer_code or existing.get("customer_code")
        if self.notifier is not None and (existing or final_code):
            await self.notifier.notify_message(
                contact_id=contact_id,
                name=profile_name,
                from_=from_,
                to=to,
                message=body,
                timestamp=message.timestamp,
                inbox_id=inbox_id,
                attribution={
                    "source_type": patch.source_type,
                    "source_url": source_url,
                    "campaign_id": ad_ids.campaign_id,
                    "adset_id": ad_ids.adset_id,
                    "ad_id": ad_ids.ad_id,
                    "ctwa_clid": click_id,
                },
                customer_code=final_code,
            )

        meta_source_type = SourceType.AD.value if click_id else (referral_source_type or existing.get("source_type") or "")
        try:
            await self.conversations.messages.attach_meta(message.id, {
                "ctwa_clid": click_id or "",
                "source_type": meta_source_type,
                "source_url": source_url or "",
                "campaign_id": ad_ids.campaign_id or "",
                "adset_id": ad_ids.adset_id or "",
                "ad_id": ad_ids.ad_id or "",
            })
        except StorageUnavailableError as e:
            logger.error(f"Could not store meta for message {message.id}: {e}")

        logger.info(f"Inbound message {message.id} from {contact_id} ({inbox_id})")
        return message


# Convenience function
def get_webhook_handler(
    conversations: ConversationService,
    notifier=None,
    settings: Optional[CRMSettings] = None,
) -> InboundWebhookHandler:
    """Get an inbound webhook handler instance."""
    return InboundWebhookHandler(conversations, notifier, settings)
