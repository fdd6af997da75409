"""
CRM Services

- contact_repository: contact hashes + recency index
- message_log: per-contact message lists, dedupe, message meta
- conversation_service: contact + messages, message recording
- attribution_service: click ids and traffic source
- purchase_ledger: purchases and conversion reporting
- stats_service: dashboard counters
"""

from .contact_repository import ContactRepository, get_contact_repository
from .message_log import MessageLog, get_message_log
from .conversation_service import ConversationService, get_conversation_service, detect_inbox
from .attribution_service import (
    AttributionService,
    get_attribution_service,
    pick_click_id,
    classify_source,
    click_id_from_webhook,
    parse_ad_ids,
    extract_customer_code,
)
from .purchase_ledger import PurchaseLedger, get_purchase_ledger, parse_amount
from .stats_service import StatsService, get_stats_service

__all__ = [
    "ContactRepository",
    "get_contact_repository",
    "MessageLog",
    "get_message_log",
    "ConversationService",
    "get_conversation_service",
    "detect_inbox",
    "AttributionService",
    "get_attribution_service",
    "pick_click_id",
    "classify_source",
    "click_id_from_webhook",
    "parse_ad_ids",
    "extract_customer_code",
    "PurchaseLedger",
    "get_purchase_ledger",
    "parse_amount",
    "StatsService",
    "get_stats_service",
]
