"""
WhatsApp CRM API Routes

FastAPI routes for:
- Webhooks (Twilio inbound messages, customer-code tagging)
- Contacts (inbox listing, export, detail, delete, inbox assignment)
- Messages (conversation pages, recording outbound messages)
- Attribution (click-id inspection)
- Purchases (ledger, bulk checks)
- Stats (dashboard counters)
- Maintenance (index reconciliation, message repair)
"""

import logging
import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from .config import CRMSettings, get_crm_settings
from .errors import NotFoundError, ValidationError
from .models import (
    # Contacts
    AssignInboxRequest,
    Contact,
    ContactConversationResponse,
    ContactExportResponse,
    ContactListResponse,
    DeletePreview,
    DeleteResponse,
    InboxContactsResponse,
    ReconcileReport,
    # Messages
    ConversationPage,
    Message,
    MessageDirection,
    OutboundMessageRequest,
    RecordMessageResponse,
    # Attribution
    CustomerCodeRequest,
    CustomerCodeResponse,
    InspectResponse,
    # Purchases
    CreatePurchaseRequest,
    PurchaseListResponse,
    PurchaseResponse,
    PurchasesBulkRequest,
    PurchasesBulkResponse,
    # Stats
    ContactsRangeStats,
    ContactsTodayStats,
    PurchaseStats,
    # Maintenance
    RepairReport,
)
from .services import (
    AttributionService,
    ContactRepository,
    ConversationService,
    MessageLog,
    PurchaseLedger,
    StatsService,
)
from .storage import KeySpace, normalize_id
from .webhooks import InboundWebhookHandler, media_kind

logger = logging.getLogger(__name__)

# Create router
crm_router = APIRouter(prefix="/api", tags=["CRM"])

MAX_PAGE_SIZE = 200
CUSTOMER_CODE_LENGTH = 8
TRACKED_TAG = "Tracked"


# =============================================================================
# Dependencies
# =============================================================================


class CRMServices:
    """Services wired to the store and clients held on ``app.state``."""

    def __init__(self, request: Request):
        state = request.app.state
        self.settings: CRMSettings = getattr(state, "settings", None) or get_crm_settings()
        self.store = state.kv_store
        self.keys = KeySpace(self.settings.crm_key_prefix)
        self.notifier = getattr(state, "notifier", None)

        self.contacts = ContactRepository(self.store, self.keys)
        self.messages = MessageLog(self.store, self.keys)
        self.conversations = ConversationService(
            self.contacts,
            self.messages,
            inbox_numbers=self.settings.inbox_numbers,
            default_inbox_id=self.settings.default_inbox_id,
        )
        self.attribution = AttributionService(
            self.contacts,
            self.messages,
            scan_window=self.settings.attribution_scan_window,
            inspect_window=self.settings.inspect_scan_window,
        )
        self.purchases = PurchaseLedger(
            self.store,
            self.keys,
            attribution=self.attribution,
            capi_client=getattr(state, "capi_client", None),
            reporting_enabled=self.settings.capi_reporting_enabled,
        )
        self.stats = StatsService(
            self.store,
            self.conversations,
            self.keys,
            inbox_ids=list(self.settings.inbox_numbers),
            tz_name=self.settings.stats_timezone,
        )
        self.webhook = InboundWebhookHandler(self.conversations, self.notifier, self.settings)


def get_services(request: Request) -> CRMServices:
    """Build the service graph for a request."""
    return CRMServices(request)


def parse_limit(value: Optional[str], default: int = 50) -> Optional[int]:
    """Page size clamped to 1..200; ``all`` means the whole history."""
    if value is None or value == "":
        return default
    if value.lower() == "all":
        return None
    try:
        limit = int(value)
    except ValueError:
        raise ValidationError("INVALID_PAYLOAD", f"Invalid limit: {value}")
    return max(1, min(limit, MAX_PAGE_SIZE))


# =============================================================================
# Webhook Routes
# =============================================================================


@crm_router.post("/webhook/twilio", status_code=204)
async def receive_twilio_webhook(request: Request, crm: CRMServices = Depends(get_services)):
    """Receive an inbound WhatsApp message from Twilio (form-encoded)."""
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}

    if crm.settings.twilio_validate_signature:
        url = crm.settings.app_base_url.rstrip("/") + request.url.path
        signature = request.headers.get("X-Twilio-Signature")
        if not crm.webhook.verify_signature(url, fields, signature):
            logger.warning("Invalid Twilio webhook signature")
            raise HTTPException(status_code=403, detail="Invalid signature")

    await crm.webhook.handle(fields)
    return Response(status_code=204)


@crm_router.post("/webhook/customer-code", response_model=CustomerCodeResponse)
async def tag_customer_code(body: CustomerCodeRequest, crm: CRMServices = Depends(get_services)):
    """Tag the contact holding a customer code as tracked."""
    code = body.customer_code.strip().upper()
    if len(code) != CUSTOMER_CODE_LENGTH:
        raise ValidationError("INVALID_CUSTOMER_CODE")

    key = await crm.contacts.find_by_customer_code(code)
    if key is None:
        raise NotFoundError("CONTACT_NOT_FOUND", f"No contact with code {code}")

    await crm.contacts.tag(key, TRACKED_TAG)
    return CustomerCodeResponse(contact=key)


# =============================================================================
# Contact Routes
# =============================================================================


@crm_router.get("/contacts", response_model=InboxContactsResponse)
async def list_inbox_contacts(
    inbox_id: Optional[str] = None,
    since: int = Query(0, ge=0, description="Minimum lastMessageAt (epoch ms)"),
    crm: CRMServices = Depends(get_services),
):
    """List the contacts of an inbox, most recent first."""
    contacts = await crm.conversations.list_inbox_contacts(
        inbox_id or crm.settings.default_inbox_id, since
    )
    return InboxContactsResponse(contacts=contacts)


@crm_router.get("/contacts/index", response_model=ContactListResponse)
async def list_contacts(
    cursor: int = Query(0, ge=0),
    limit: int = Query(30, ge=1, le=MAX_PAGE_SIZE),
    crm: CRMServices = Depends(get_services),
):
    """Page through the recency index across inboxes."""
    return await crm.contacts.list(cursor, limit)


@crm_router.get("/contacts/export", response_model=ContactExportResponse)
async def export_contacts(inbox_id: Optional[str] = None, crm: CRMServices = Depends(get_services)):
    """Export every contact id (optionally for one inbox)."""
    return ContactExportResponse(contacts=await crm.conversations.export_contact_ids(inbox_id))


@crm_router.post("/contacts/purchases-bulk", response_model=PurchasesBulkResponse)
async def purchases_bulk(body: PurchasesBulkRequest, crm: CRMServices = Depends(get_services)):
    """Whether each contact has at least one purchase."""
    return PurchasesBulkResponse(result=await crm.purchases.has_purchases(body.contact_ids))


@crm_router.get("/contacts/{contact_id}", response_model=ContactConversationResponse)
async def get_contact(
    contact_id: str,
    offset: int = Query(0, ge=0),
    limit: Optional[str] = None,
    inbox_id: Optional[str] = None,
    crm: CRMServices = Depends(get_services),
):
    """Get a contact with one page of its conversation."""
    return await crm.conversations.get_contact_with_messages(
        contact_id, offset, parse_limit(limit), inbox_id
    )


@crm_router.get("/contacts/{contact_id}/messages", response_model=ConversationPage)
async def get_messages(
    contact_id: str,
    offset: int = Query(0, ge=0),
    limit: Optional[str] = None,
    crm: CRMServices = Depends(get_services),
):
    """Get a page of messages, oldest first."""
    return await crm.messages.read(contact_id, offset, parse_limit(limit))


@crm_router.post("/contacts/{contact_id}/messages", response_model=RecordMessageResponse)
async def record_outbound_message(
    contact_id: str,
    body: OutboundMessageRequest,
    crm: CRMServices = Depends(get_services),
):
    """Record an outbound message already accepted by the provider."""
    cid = normalize_id(contact_id)
    if not cid:
        raise ValidationError("MISSING_CONTACT_ID")
    if not body.text and not body.media_url:
        raise ValidationError("INVALID_PAYLOAD", "Message needs text or media")

    message = Message(
        id=body.provider_message_id or str(uuid.uuid4()),
        from_=body.from_,
        to=body.to or cid,
        text=body.text,
        timestamp=int(time.time() * 1000),
        direction=MessageDirection.OUT,
        inbox_id=body.inbox_id or crm.settings.default_inbox_id,
        media_url=body.media_url,
        media_type=media_kind(body.media_url) if body.media_url else None,
    )

    contact = await crm.conversations.record_message(
        cid, message, dedupe_key=body.provider_message_id
    )
    return RecordMessageResponse(recorded=contact is not None, message=message)


@crm_router.get("/contacts/{contact_id}/inspect", response_model=InspectResponse)
async def inspect_attribution(contact_id: str, crm: CRMServices = Depends(get_services)):
    """Show every click-id source of a contact and the chosen one."""
    return InspectResponse(result=await crm.attribution.inspect(contact_id))


@crm_router.get("/contacts/{contact_id}/delete")
async def preview_or_delete_contact(
    contact_id: str,
    confirm: bool = False,
    crm: CRMServices = Depends(get_services),
):
    """Preview a delete, or delete with ``?confirm=1``."""
    if confirm:
        return DeleteResponse(deleted=await crm.contacts.delete(contact_id))

    preview = await crm.contacts.delete_preview(contact_id)
    return DeletePreview(
        contact_id=preview.contact_id,
        stored_ids=preview.removed_from_index,
        preview=preview.keys,
    )


@crm_router.post("/contacts/{contact_id}/delete", response_model=DeleteResponse)
async def delete_contact(contact_id: str, crm: CRMServices = Depends(get_services)):
    """Delete a contact with its messages and purchases."""
    return DeleteResponse(deleted=await crm.contacts.delete(contact_id))


@crm_router.post("/contacts/{contact_id}/inbox", response_model=Contact)
async def assign_inbox(
    contact_id: str,
    body: AssignInboxRequest,
    crm: CRMServices = Depends(get_services),
):
    """Move a contact to another inbox."""
    return await crm.conversations.assign_inbox(contact_id, body.inbox_id)


# =============================================================================
# Purchase Routes
# =============================================================================


@crm_router.get("/contacts/{contact_id}/purchases", response_model=PurchaseListResponse)
async def list_purchases(
    contact_id: str,
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    crm: CRMServices = Depends(get_services),
):
    """List a contact's purchases, most recent first."""
    return PurchaseListResponse(purchases=await crm.purchases.list(contact_id, limit))


@crm_router.post("/contacts/{contact_id}/purchases", response_model=PurchaseResponse)
async def create_purchase(
    contact_id: str,
    body: CreatePurchaseRequest,
    crm: CRMServices = Depends(get_services),
):
    """Record a purchase, notify it and report the conversion when enabled."""
    purchase = await crm.purchases.create(
        contact_id,
        body.amount,
        currency=body.currency,
        source=body.source,
        meta=body.meta,
    )

    if crm.notifier is not None:
        contact = await crm.contacts.get(purchase.contact_id)
        await crm.notifier.notify_purchase(
            contact_id=purchase.contact_id,
            amount=purchase.amount,
            currency=purchase.currency,
            created_at=purchase.created_at,
            customer_code=contact.customer_code if contact else None,
            name=contact.display_name if contact else None,
        )

    purchase = await crm.purchases.report_conversion(purchase, click_id=body.click_id)
    return PurchaseResponse(purchase=purchase)


# =============================================================================
# Stats Routes
# =============================================================================


@crm_router.get("/stats/contacts-today", response_model=ContactsTodayStats)
async def contacts_today(crm: CRMServices = Depends(get_services)):
    """Contacts active today and yesterday."""
    return await crm.stats.contacts_today()


@crm_router.get("/stats/contacts-range", response_model=ContactsRangeStats)
async def contacts_range(
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    crm: CRMServices = Depends(get_services),
):
    """Contacts whose last activity falls inside a range."""
    return await crm.stats.contacts_range(start, end)


@crm_router.get(
    "/stats/purchases",
    response_model=PurchaseStats,
    response_model_exclude_none=True,
)
async def purchase_stats(
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    crm: CRMServices = Depends(get_services),
):
    """Purchase counters (daily, or inside a YYYY-MM-DD range)."""
    return await crm.stats.purchase_stats(start, end)


# =============================================================================
# Maintenance Routes
# =============================================================================


@crm_router.post("/maintenance/reconcile-index", response_model=ReconcileReport)
async def reconcile_index(crm: CRMServices = Depends(get_services)):
    """Rewrite index scores from contact hashes."""
    return await crm.contacts.reconcile_index()


@crm_router.post("/maintenance/repair-messages", response_model=RepairReport)
async def repair_messages(crm: CRMServices = Depends(get_services)):
    """Drop unparsable entries from every message list."""
    return await crm.messages.repair()
