"""
Pydantic models for the WhatsApp CRM.

Covers: Contacts, Messages, Purchases, and the API request/response shapes.

Stored records keep their historical on-disk field names (``wa_id``,
``lastMessageAt``, ``ctwa_clid``, ``capiStatus``...) through aliases, so the
service reads and writes data produced by earlier deployments unchanged.
"""

import json
import math
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from typing import Optional, List, Dict, Any, Union
from enum import Enum


# =============================================================================
# Enums
# =============================================================================


class SourceType(str, Enum):
    """Where a contact's traffic came from."""
    AD = "ad"
    ORGANIC = "organic"
    UNKNOWN = "unknown"


class MessageDirection(str, Enum):
    """Message direction."""
    IN = "in"
    OUT = "out"


class MediaKind(str, Enum):
    """Supported media attachments."""
    IMAGE = "image"
    PDF = "pdf"


class PurchaseStatus(str, Enum):
    """Conversion reporting status of a purchase."""
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"


# Placeholder used as last_text for media-only messages
MEDIA_PLACEHOLDER = "[media]"


# =============================================================================
# Contact Models
# =============================================================================


# Python attribute -> stored hash field
CONTACT_HASH_FIELDS = {
    "id": "wa_id",
    "display_name": "name",
    "last_message_at": "lastMessageAt",
    "last_text": "lastText",
    "inbox_id": "inbox_id",
    "click_id": "ctwa_clid",
    "source_type": "source_type",
    "source_url": "source_url",
    "campaign_id": "campaign_id",
    "adset_id": "adset_id",
    "ad_id": "ad_id",
    "customer_code": "customer_code",
    "tag": "tag",
}

ATTRIBUTION_FIELDS = ("click_id", "source_type", "source_url", "campaign_id", "adset_id", "ad_id")


def _to_millis(value: Any) -> int:
    """Parse a stored epoch-millis value, 0 when unusable."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


class Attribution(BaseModel):
    """Ad origin of a contact."""
    click_id: Optional[str] = None
    source_type: Optional[str] = None
    source_url: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None


class Contact(BaseModel):
    """A contact as stored in ``contact:{id}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="wa_id")
    display_name: Optional[str] = Field(None, alias="name")
    last_message_at: int = Field(0, alias="lastMessageAt")
    last_text: str = Field("", alias="lastText")
    inbox_id: Optional[str] = None

    # Attribution (stored flat)
    click_id: Optional[str] = Field(None, alias="ctwa_clid")
    source_type: Optional[str] = None
    source_url: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None

    customer_code: Optional[str] = None
    tag: Optional[str] = None

    # Stored fields this model does not name (kept, never interpreted)
    extra: Dict[str, str] = Field(default_factory=dict)

    @property
    def attribution(self) -> Optional[Attribution]:
        values = {name: getattr(self, name) for name in ATTRIBUTION_FIELDS}
        if not any(values.values()):
            return None
        return Attribution(**values)

    @property
    def is_ad(self) -> bool:
        return self.source_type == SourceType.AD.value or bool(self.click_id)

    @classmethod
    def from_hash(cls, data: Dict[str, Any], contact_id: Optional[str] = None) -> "Contact":
        """Build a contact from raw hash fields."""
        stored_to_attr = {v: k for k, v in CONTACT_HASH_FIELDS.items()}
        values: Dict[str, Any] = {}
        extra: Dict[str, str] = {}
        for field, value in data.items():
            attr = stored_to_attr.get(field)
            if attr is None:
                extra[field] = str(value)
            elif attr == "last_message_at":
                values[attr] = _to_millis(value)
            elif value is not None and value != "":
                values[attr] = str(value)
        values.setdefault("id", contact_id or "")
        return cls(extra=extra, **values)

    def to_hash(self) -> Dict[str, str]:
        """Flatten into hash fields, omitting empty values."""
        out: Dict[str, str] = dict(self.extra)
        for attr, field in CONTACT_HASH_FIELDS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            out[field] = str(value)
        return out


class ContactPatch(BaseModel):
    """
    Fields to merge into a contact.

    Absent (None) fields leave the stored value untouched; present fields
    replace it. There is no deep merge.
    """

    model_config = ConfigDict(populate_by_name=True)

    display_name: Optional[str] = Field(None, alias="name")
    last_message_at: Optional[int] = Field(None, alias="lastMessageAt")
    last_text: Optional[str] = Field(None, alias="lastText")
    inbox_id: Optional[str] = None
    click_id: Optional[str] = Field(None, alias="ctwa_clid")
    source_type: Optional[str] = None
    source_url: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    customer_code: Optional[str] = None
    tag: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)

    def to_fields(self) -> Dict[str, str]:
        """Stored hash fields carried by this patch."""
        out: Dict[str, str] = dict(self.extra)
        for attr, field in CONTACT_HASH_FIELDS.items():
            if attr == "id":
                continue
            value = getattr(self, attr)
            if value is not None:
                out[field] = str(value)
        return out

    def merged_with(self, other: "ContactPatch") -> "ContactPatch":
        """Return a patch where ``other``'s present fields win."""
        data = self.model_dump(exclude_none=True)
        data.update(other.model_dump(exclude_none=True))
        data["extra"] = {**self.extra, **other.extra}
        return ContactPatch(**data)


class ContactListResponse(BaseModel):
    """One page of the recency index."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    contacts: List[Contact]
    next_cursor: Optional[int] = Field(None, alias="nextCursor")


class InboxContactsResponse(BaseModel):
    """Contacts of one inbox."""
    ok: bool = True
    contacts: List[Contact]


class ExportedContact(BaseModel):
    wa_id: str


class ContactExportResponse(BaseModel):
    ok: bool = True
    contacts: List[ExportedContact]


class DeleteResult(BaseModel):
    """Keys removed by an administrative delete."""
    model_config = ConfigDict(populate_by_name=True)

    contact_id: str
    keys: List[str]
    removed_from_index: List[str] = Field(default_factory=list, alias="removedFromIndex")


class DeletePreview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    contact_id: str = Field(..., alias="waIdNumeric")
    stored_ids: List[str] = Field(default_factory=list, alias="storedWaIds")
    preview: List[str]
    hint: str = "Use ?confirm=1 or POST to this route to delete."


class DeleteResponse(BaseModel):
    ok: bool = True
    deleted: DeleteResult


class ReconcileReport(BaseModel):
    """Outcome of a recency-index reconciliation sweep."""
    scanned: int = 0
    rescored: int = 0
    added: int = 0
    skipped: int = 0


class AssignInboxRequest(BaseModel):
    inbox_id: str = Field(..., min_length=1)


# =============================================================================
# Message Models
# =============================================================================


class MessageMedia(BaseModel):
    """Media attached to a message."""
    url: str
    kind: str


class Message(BaseModel):
    """A message as serialized in ``messages:{id}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: str = Field("", alias="from")
    to: str = ""
    text: str = ""
    timestamp: int
    direction: MessageDirection = MessageDirection.IN
    inbox_id: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None

    @property
    def media(self) -> Optional[MessageMedia]:
        if not self.media_url:
            return None
        return MessageMedia(url=self.media_url, kind=self.media_type or MediaKind.IMAGE.value)

    def to_json(self) -> str:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True, mode="json"),
            ensure_ascii=False,
        )

    @classmethod
    def from_stored(cls, raw: Any) -> Optional["Message"]:
        """
        Parse a stored list entry.

        Returns None for entries that are not JSON objects or lack ``id``,
        ``timestamp`` or a non-null ``text``.
        """
        data = raw
        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except ValueError:
                return None
        if not isinstance(data, dict):
            return None
        if not data.get("id") or data.get("timestamp") in (None, "") or data.get("text") is None:
            return None
        try:
            return cls.model_validate(data)
        except PydanticValidationError:
            return None


class ConversationPage(BaseModel):
    """Messages of one contact, oldest first."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    messages: List[Message]
    next_offset: Optional[int] = Field(None, alias="nextOffset")


class ContactConversationResponse(BaseModel):
    """Contact record plus one page of its messages."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    contact: Contact
    messages: List[Message]
    next_offset: Optional[int] = Field(None, alias="nextOffset")


class OutboundMessageRequest(BaseModel):
    """An outbound message already accepted by the provider."""
    model_config = ConfigDict(populate_by_name=True)

    provider_message_id: Optional[str] = Field(None, alias="sid")
    from_: str = Field("", alias="from")
    to: Optional[str] = None
    text: str = ""
    inbox_id: Optional[str] = None
    media_url: Optional[str] = None


class RecordMessageResponse(BaseModel):
    ok: bool = True
    recorded: bool
    message: Message


# =============================================================================
# Attribution Models
# =============================================================================


class ClickIdCandidate(BaseModel):
    """A key/value pair that looks like an ad click identifier."""
    key: str
    value: str


class AttributionInspectResult(BaseModel):
    """Debug view of every click-id source for a contact."""
    model_config = ConfigDict(populate_by_name=True)

    contact_id: str = Field(..., alias="waId")
    sources: Dict[str, Dict[str, Any]]
    chosen: Optional[ClickIdCandidate] = None
    messages_scanned: int = Field(0, alias="messagesScanned")


class InspectResponse(BaseModel):
    ok: bool = True
    result: AttributionInspectResult


class AdIds(BaseModel):
    """Campaign identifiers carried in a referral URL."""
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None


class CustomerCodeRequest(BaseModel):
    customer_code: str = ""


class CustomerCodeResponse(BaseModel):
    ok: bool = True
    contact: str


# =============================================================================
# Purchase Models
# =============================================================================


class Purchase(BaseModel):
    """A purchase as serialized in ``purchases:{id}``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    contact_id: str = Field(..., alias="waId")
    amount: float
    currency: str = "ARS"
    source: str = "manual"
    created_at: str = Field(..., alias="createdAt")
    meta: Dict[str, Any] = Field(default_factory=dict)
    status: PurchaseStatus = Field(PurchaseStatus.PENDING, alias="capiStatus")
    last_error: Optional[str] = Field(None, alias="capiLastError")
    click_id: Optional[str] = Field(None, alias="ctwa_clid")

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, mode="json"), ensure_ascii=False)


class RawPurchase(BaseModel):
    """A stored purchase entry that could not be parsed, kept for audit."""
    model_config = ConfigDict(populate_by_name=True)

    raw: str = Field(..., alias="_raw")


PurchaseEntry = Union[Purchase, RawPurchase]


class CreatePurchaseRequest(BaseModel):
    """Body of a purchase creation request."""
    model_config = ConfigDict(populate_by_name=True)

    amount: Any = None
    currency: Optional[str] = None
    source: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    click_id: Optional[str] = Field(None, alias="clid")


class PurchaseResponse(BaseModel):
    ok: bool = True
    purchase: Purchase


class PurchaseListResponse(BaseModel):
    ok: bool = True
    purchases: List[PurchaseEntry]


class PurchasesBulkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contact_ids: List[str] = Field(default_factory=list, alias="waIds")


class PurchasesBulkResponse(BaseModel):
    ok: bool = True
    result: Dict[str, bool]


# =============================================================================
# Stats Models
# =============================================================================


class ContactsTodayStats(BaseModel):
    """Contacts active today and yesterday in the stats timezone."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    total: int
    today: int = Field(..., alias="hoy")
    yesterday: int = Field(..., alias="ayer")
    tz: str


class ContactsRangeStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    total: int
    in_range: int = Field(..., alias="enRango")
    start: str = Field(..., alias="from")
    end: str = Field(..., alias="to")
    tz: str


class PurchaseStats(BaseModel):
    """Purchase counts; range fields are set only in range mode."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    tz: str
    total: Optional[int] = None
    with_purchases: Optional[int] = Field(None, alias="conCargas")
    conversion: Optional[int] = None
    today: Optional[int] = Field(None, alias="hoy")
    yesterday: Optional[int] = Field(None, alias="ayer")
    purchases: Optional[int] = Field(None, alias="cargas")
    start: Optional[str] = Field(None, alias="from")
    end: Optional[str] = Field(None, alias="to")


# =============================================================================
# Maintenance Models
# =============================================================================


class RepairedList(BaseModel):
    key: str
    total: int
    kept: int
    removed: int


class RepairReport(BaseModel):
    ok: bool = True
    report: List[RepairedList]


# =============================================================================
# Error Models
# =============================================================================


class CRMErrorResponse(BaseModel):
    """Error response."""
    ok: bool = False
    error: str
