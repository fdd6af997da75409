"""
Conversation Service - contacts joined with their message history

Handles:
- Contact + message page reads (optionally filtered by inbox)
- Recording a message and refreshing the contact in one call path
- Inbox listings and contact exports over the recency index
"""

import logging
from typing import Optional, List, Dict

from ..errors import NotFoundError, ValidationError
from ..models import (
    Contact,
    ContactPatch,
    ContactConversationResponse,
    ExportedContact,
    Message,
    MessageDirection,
    MEDIA_PLACEHOLDER,
)
from ..storage import normalize_id
from .contact_repository import ContactRepository
from .message_log import MessageLog

logger = logging.getLogger(__name__)

# Index page size used by inbox listings
INBOX_PAGE_SIZE = 100
EXPORT_PAGE_SIZE = 200


def detect_inbox(number: Optional[str], inbox_numbers: Dict[str, str], default: str) -> str:
    """
    Inbox whose receiving number appears in ``number``.

    Args:
        number: Receiving address ("whatsapp:+15077065642")
        inbox_numbers: Inbox id -> number
        default: Inbox used when nothing matches

    Returns:
        Inbox id
    """
    if number:
        for inbox_id, inbox_number in inbox_numbers.items():
            if inbox_number and inbox_number in number:
                return inbox_id
    return default


class ConversationService:
    """
    Joins the contact repository and the message log.

    Inbound and outbound messages both go through ``record_message`` so the
    contact's ``lastMessageAt`` and index score follow every stored message.
    """

    def __init__(
        self,
        contacts: ContactRepository,
        messages: MessageLog,
        inbox_numbers: Optional[Dict[str, str]] = None,
        default_inbox_id: str = "ventas",
    ):
        self.contacts = contacts
        self.messages = messages
        self.inbox_numbers = inbox_numbers or {}
        self.default_inbox_id = default_inbox_id

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_contact_with_messages(
        self,
        contact_id: str,
        offset: int = 0,
        limit: Optional[int] = 50,
        inbox_filter: Optional[str] = None,
    ) -> ContactConversationResponse:
        """
        Get a contact with one page of its conversation.

        The inbox filter applies after pagination, so a page can come back
        shorter than ``limit`` (or empty) while ``next_offset`` is still set.

        Args:
            contact_id: Contact id
            offset: Message offset (storage order)
            limit: Page size, None for everything
            inbox_filter: Only keep messages of this inbox

        Returns:
            Contact, messages oldest-first and the next offset
        """
        contact = await self.contacts.get(contact_id)
        if contact is None:
            raise NotFoundError("NOT_FOUND", f"Contact {contact_id} not found")

        page = await self.messages.read(contact.id, offset, limit)
        messages = page.messages
        if inbox_filter:
            messages = [m for m in messages if m.inbox_id == inbox_filter]

        return ContactConversationResponse(
            contact=contact,
            messages=messages,
            next_offset=page.next_offset,
        )

    async def list_inbox_contacts(self, inbox_id: str, since: int = 0) -> List[Contact]:
        """
        Contacts of an inbox, most recent first.

        Walks the index in pages of ``INBOX_PAGE_SIZE`` and stops after the
        page whose last contact is older than ``since``.

        Args:
            inbox_id: Inbox to keep
            since: Minimum ``lastMessageAt`` in epoch ms (0 = no bound)
        """
        out: List[Contact] = []
        cursor = 0
        while True:
            page = await self.contacts.list(cursor, INBOX_PAGE_SIZE)
            for contact in page.contacts:
                if contact.inbox_id != inbox_id:
                    continue
                if since and contact.last_message_at < since:
                    continue
                out.append(contact)

            last_ts = page.contacts[-1].last_message_at if page.contacts else 0
            if page.next_cursor is None or (since and last_ts < since):
                break
            cursor = page.next_cursor
        return out

    async def export_contact_ids(self, inbox_id: Optional[str] = None) -> List[ExportedContact]:
        """Every contact id in index order, optionally for one inbox."""
        out: List[ExportedContact] = []
        cursor = 0
        while True:
            page = await self.contacts.list(cursor, EXPORT_PAGE_SIZE)
            for contact in page.contacts:
                if inbox_id and contact.inbox_id != inbox_id:
                    continue
                out.append(ExportedContact(wa_id=normalize_id(contact.id)))
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        return out

    # =========================================================================
    # Writes
    # =========================================================================

    async def record_message(
        self,
        contact_id: str,
        message: Message,
        patch: Optional[ContactPatch] = None,
        dedupe_key: Optional[str] = None,
    ) -> Optional[Contact]:
        """
        Append a message and refresh the contact.

        The contact gets ``lastMessageAt`` = message timestamp, ``lastText``
        = message text (``[media]`` for media-only messages) and an inbox,
        then ``patch`` is merged on top.

        Args:
            contact_id: Contact id
            message: Message to store
            patch: Extra contact fields (name, attribution...)
            dedupe_key: Provider message id for at-least-once delivery

        Returns:
            The updated contact, or None when the message was a duplicate
        """
        cid = normalize_id(contact_id)
        if not cid:
            raise ValidationError("MISSING_CONTACT_ID")

        stored = await self.messages.append(cid, message, dedupe_key)
        if not stored:
            return None

        last_text = message.text or (MEDIA_PLACEHOLDER if message.media_url else "")
        base = ContactPatch(
            last_message_at=message.timestamp,
            last_text=last_text,
            inbox_id=self._inbox_for(message),
        )
        if patch is not None:
            base = base.merged_with(patch)

        return await self.contacts.upsert(cid, base)

    def _inbox_for(self, message: Message) -> str:
        if message.inbox_id:
            return message.inbox_id
        if message.direction == MessageDirection.IN:
            return detect_inbox(message.to, self.inbox_numbers, self.default_inbox_id)
        return self.default_inbox_id

    async def assign_inbox(self, contact_id: str, inbox_id: str) -> Contact:
        """Move a contact to another inbox."""
        await self.contacts.require(contact_id)
        return await self.contacts.upsert(contact_id, ContactPatch(inbox_id=inbox_id))


# Convenience function
def get_conversation_service(
    contacts: ContactRepository,
    messages: MessageLog,
    inbox_numbers: Optional[Dict[str, str]] = None,
    default_inbox_id: str = "ventas",
) -> ConversationService:
    """Get a conversation service instance."""
    return ConversationService(contacts, messages, inbox_numbers, default_inbox_id)
