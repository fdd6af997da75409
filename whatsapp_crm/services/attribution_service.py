"""
Attribution Service - ad click identifiers and traffic source

Handles:
- Picking a click id out of loosely-named fields (ctwa_clid, clid, ctw_clid...)
- Resolving the click id of a contact from its record and recent messages
- Source classification (ad / organic) that never downgrades an ad contact
- Referral parsing for inbound webhooks (ad ids, customer codes)
- Debug inspection of every candidate source
"""

import logging
import re
from typing import Optional, Dict, Any, Mapping, List
from urllib.parse import urlsplit, parse_qs

from ..models import (
    AdIds,
    AttributionInspectResult,
    ClickIdCandidate,
    SourceType,
)
from ..storage import normalize_id
from .contact_repository import ContactRepository
from .message_log import MessageLog

logger = logging.getLogger(__name__)


# =============================================================================
# Click id aliases
# =============================================================================

# Exact names, in preference order
PREFERRED_CLICK_ID_KEYS = ("ctwa_clid", "clid", "ctw_clid")

# Substrings that mark a key as a click id
CLICK_ID_KEY_FRAGMENTS = (
    "ctwa_clid",
    "ctw_clid",
    "wa_click_id",
    "wa_ad_click",
    "whatsapp_click_id",
)

# Inbound webhook fields carrying the click id, first non-blank wins
WEBHOOK_CLICK_ID_FIELDS = (
    "ReferralCtwaClid",
    "ReferralCtwClid",
    "ctwa_clid",
    "ctw_clid",
    "clid",
)

_SPANISH_CODE = re.compile(r"CÓDIGO DE BONUS\s*ES[:\s]*([A-Z0-9]{8})")
_ENGLISH_CODE = re.compile(r"MY CODE IS[:\s]*([A-Z0-9]{8})")
_ANY_CODE = re.compile(r"\b([A-Z0-9]{8})\b")


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _merge_present(pool: Dict[str, Any], extra: Mapping[str, Any]) -> None:
    """Copy fields of ``extra`` into ``pool``, skipping empty values."""
    for key, value in extra.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        pool[key] = value


def _is_click_id_key(key: str) -> bool:
    lowered = key.lower()
    return lowered == "clid" or any(fragment in lowered for fragment in CLICK_ID_KEY_FRAGMENTS)


def pick_click_id(sources: Mapping[str, Any]) -> Optional[ClickIdCandidate]:
    """
    Pick the best click id out of a flat mapping.

    Keys match case-insensitively. An exact ``ctwa_clid`` beats ``clid``,
    which beats ``ctw_clid``; otherwise the first matching key wins.
    Blank and non-string values are ignored.

    Args:
        sources: Field name -> value

    Returns:
        The chosen key/value, or None
    """
    candidates: List[ClickIdCandidate] = []
    for key, value in sources.items():
        cleaned = _clean(value)
        if cleaned is None or not _is_click_id_key(str(key)):
            continue
        candidates.append(ClickIdCandidate(key=str(key), value=cleaned))

    for preferred in PREFERRED_CLICK_ID_KEYS:
        for candidate in candidates:
            if candidate.key.lower() == preferred:
                return candidate

    return candidates[0] if candidates else None


def classify_source(existing: Optional[Mapping[str, Any]], click_id: Optional[str]) -> Optional[str]:
    """
    Source type to write for a contact.

    Args:
        existing: Stored contact fields (None/empty for a new contact)
        click_id: Click id seen on the current message

    Returns:
        "ad" when a click id is present, "organic" for a contact without
        any prior source, None when the stored value must stay
    """
    if _clean(click_id):
        return SourceType.AD.value

    existing = existing or {}
    was_ad = existing.get("source_type") == SourceType.AD.value or bool(_clean(existing.get("ctwa_clid")))
    if not was_ad and not existing.get("source_type"):
        return SourceType.ORGANIC.value
    return None


def click_id_from_webhook(fields: Mapping[str, Any]) -> Optional[str]:
    """Click id carried by an inbound webhook, None if absent."""
    for name in WEBHOOK_CLICK_ID_FIELDS:
        value = _clean(fields.get(name))
        if value:
            return value
    return None


def parse_ad_ids(source_url: Optional[str]) -> AdIds:
    """
    Campaign, ad set and ad ids from a referral URL query string.

    Unparsable URLs give empty ids.
    """
    if not source_url:
        return AdIds()
    try:
        query = parse_qs(urlsplit(source_url).query)
    except ValueError:
        logger.debug(f"Unparsable referral URL: {source_url}")
        return AdIds()

    def first(name: str) -> Optional[str]:
        values = query.get(name) or []
        return _clean(values[0]) if values else None

    return AdIds(
        campaign_id=first("campaign_id"),
        adset_id=first("adset_id"),
        ad_id=first("ad_id"),
    )


def extract_customer_code(body: Optional[str]) -> Optional[str]:
    """
    Find an 8-character customer code in a message body.

    Tries "código de bonus es: XXXXXXXX", then "my code is: XXXXXXXX",
    then any standalone 8-character alphanumeric token. Upper-cased.
    """
    if not body:
        return None
    upper = body.upper()
    for pattern in (_SPANISH_CODE, _ENGLISH_CODE, _ANY_CODE):
        match = pattern.search(upper)
        if match:
            return match.group(1)
    return None


# =============================================================================
# Resolver
# =============================================================================


class AttributionService:
    """
    Resolves click ids for contacts.

    Looks at the contact record first, then at recent messages together
    with their ``meta`` objects and ``message_meta`` hashes.
    """

    def __init__(
        self,
        contacts: ContactRepository,
        messages: MessageLog,
        scan_window: int = 10,
        inspect_window: int = 20,
    ):
        """
        Initialize attribution service.

        Args:
            contacts: Contact repository
            messages: Message log
            scan_window: Recent messages scanned by ``resolve_for_contact``
            inspect_window: Recent messages included in ``inspect``
        """
        self.contacts = contacts
        self.messages = messages
        self.scan_window = scan_window
        self.inspect_window = inspect_window

    async def resolve_for_contact(self, contact_id: str) -> Optional[str]:
        """
        Click id for a contact, first match wins.

        Returns:
            The click id, or None when no source carries one
        """
        cid = normalize_id(contact_id)
        if not cid:
            return None

        picked = pick_click_id(await self.contacts.get_fields(cid))
        if picked:
            return picked.value

        for entry in await self.messages.recent_raw(cid, self.scan_window):
            if not isinstance(entry, dict):
                continue
            pool: Dict[str, Any] = dict(entry)
            if isinstance(entry.get("meta"), dict):
                _merge_present(pool, entry["meta"])
            if entry.get("id"):
                _merge_present(pool, await self.messages.get_meta(str(entry["id"])))
            picked = pick_click_id(pool)
            if picked:
                return picked.value

        return None

    async def inspect(self, contact_id: str) -> AttributionInspectResult:
        """
        Every click-id source for a contact and the one that would be chosen.

        Message fields are flattened as ``msg[i].field`` and
        ``msg[i].meta.field`` (i = 0 is the newest message).
        """
        cid = normalize_id(contact_id)
        sources: Dict[str, Dict[str, Any]] = {}

        contact = await self.contacts.get_fields(cid)
        if contact:
            sources["contact"] = dict(contact)

        recent = await self.messages.recent_raw(cid, self.inspect_window)
        flattened: Dict[str, Any] = {}
        for i, entry in enumerate(recent):
            if not isinstance(entry, dict):
                continue
            for key, value in entry.items():
                flattened[f"msg[{i}].{key}"] = value
            if isinstance(entry.get("meta"), dict):
                for key, value in entry["meta"].items():
                    flattened[f"msg[{i}].meta.{key}"] = value
        sources["messages"] = flattened

        pool: Dict[str, Any] = {**(contact or {}), **flattened}
        return AttributionInspectResult(
            contact_id=cid,
            sources=sources,
            chosen=pick_click_id(pool),
            messages_scanned=len(recent),
        )


# Convenience function
def get_attribution_service(
    contacts: ContactRepository,
    messages: MessageLog,
    scan_window: int = 10,
    inspect_window: int = 20,
) -> AttributionService:
    """Get an attribution service instance."""
    return AttributionService(contacts, messages, scan_window, inspect_window)
