"""
Message Log - append-only message history per contact

Handles:
- Deduplicated appends (provider at-least-once delivery guard)
- Paginated reads returned oldest-first
- Per-message attribution metadata
- Repair of lists holding unparsable entries
"""

import json
import logging
from typing import Optional, List, Dict, Any

from ..errors import StorageUnavailableError
from ..models import Message, ConversationPage, RepairedList, RepairReport
from ..storage import KVStore, KeySpace, normalize_id

logger = logging.getLogger(__name__)


class MessageLog:
    """
    Owns ``messages:{id}`` lists, the ``dedupe:msg`` set and
    ``message_meta:{message_id}`` hashes.

    Lists are stored most-recent-first. Appending never touches the contact
    record; callers upsert the contact themselves.
    """

    def __init__(self, store: KVStore, keys: Optional[KeySpace] = None):
        self.store = store
        self.keys = keys or KeySpace()

    # =========================================================================
    # Writes
    # =========================================================================

    async def append(
        self,
        contact_id: str,
        message: Message,
        dedupe_key: Optional[str] = None,
    ) -> bool:
        """
        Prepend a message to a contact's list.

        When ``dedupe_key`` is given it is added to the dedupe set first; a
        key that was already there makes the append a silent no-op.

        Args:
            contact_id: Contact id (normalized before use)
            message: Message to store
            dedupe_key: Provider message id

        Returns:
            True if the message was stored, False if it was a duplicate
        """
        cid = normalize_id(contact_id)

        if dedupe_key:
            added = await self.store.sadd(self.keys.dedupe, dedupe_key)
            if not added:
                logger.info(f"Duplicate delivery {dedupe_key} for {cid} ignored")
                return False

        await self.store.lpush(self.keys.messages(cid), message.to_json())
        return True

    async def attach_meta(self, message_id: str, fields: Dict[str, Any]) -> None:
        """Store attribution fields for one message."""
        mapping = {k: "" if v is None else str(v) for k, v in fields.items()}
        await self.store.hset(self.keys.message_meta(message_id), mapping)

    # =========================================================================
    # Reads
    # =========================================================================

    async def read(
        self,
        contact_id: str,
        offset: int = 0,
        limit: Optional[int] = 50,
    ) -> ConversationPage:
        """
        Read a page of messages, oldest first.

        The page is taken in storage order (newest first) starting at
        ``offset``. Unparsable entries and entries missing ``id``,
        ``timestamp`` or ``text`` are dropped before sorting.

        Args:
            contact_id: Contact id
            offset: Storage-order offset
            limit: Page size (at least 1), None for the whole history

        Returns:
            Messages plus ``next_offset``, set when the storage slice was
            full even if entries were dropped from it
        """
        cid = normalize_id(contact_id)
        offset = max(0, int(offset))
        if limit is not None:
            limit = max(1, int(limit))
        key = self.keys.messages(cid)

        try:
            if limit is None:
                raw = await self.store.lrange(key, 0, -1)
            else:
                raw = await self.store.lrange(key, offset, offset + limit - 1)
        except StorageUnavailableError as e:
            logger.warning(f"Could not read messages for {cid}: {e}")
            return ConversationPage(messages=[], next_offset=None)

        # Walk oldest-first so equal timestamps keep arrival order
        messages: List[Message] = []
        for entry in reversed(raw):
            message = Message.from_stored(entry)
            if message is not None:
                messages.append(message)

        messages.sort(key=lambda m: m.timestamp)

        if limit is None or len(raw) < limit:
            next_offset = None
        else:
            next_offset = offset + limit
        return ConversationPage(messages=messages, next_offset=next_offset)

    async def recent_raw(self, contact_id: str, count: int) -> List[Any]:
        """
        Newest ``count`` entries as decoded JSON, raw strings when not JSON.

        Used by attribution scans, which look at fields the Message model
        does not name.
        """
        cid = normalize_id(contact_id)
        if count <= 0:
            return []
        try:
            raw = await self.store.lrange(self.keys.messages(cid), 0, count - 1)
        except StorageUnavailableError as e:
            logger.warning(f"Could not read messages for {cid}: {e}")
            return []

        out: List[Any] = []
        for entry in raw:
            try:
                out.append(json.loads(entry))
            except ValueError:
                out.append(entry)
        return out

    async def get_meta(self, message_id: str) -> Dict[str, str]:
        """Attribution fields stored for a message, empty if none."""
        try:
            return await self.store.hgetall(self.keys.message_meta(message_id))
        except StorageUnavailableError as e:
            logger.warning(f"Could not read meta for message {message_id}: {e}")
            return {}

    async def length(self, contact_id: str) -> int:
        """Number of stored entries for a contact."""
        try:
            return await self.store.llen(self.keys.messages(normalize_id(contact_id)))
        except StorageUnavailableError as e:
            logger.warning(f"Could not read message count for {contact_id}: {e}")
            return 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def repair(self) -> RepairReport:
        """
        Rewrite every message list keeping only valid JSON entries.

        Order is preserved. Lists that fail to read are skipped.
        """
        report: List[RepairedList] = []
        for key in await self.store.scan_keys(self.keys.pattern("messages")):
            try:
                items = await self.store.lrange(key, 0, -1)
            except StorageUnavailableError as e:
                logger.warning(f"Repair skipped {key}: {e}")
                continue

            keep: List[str] = []
            for item in items:
                try:
                    json.loads(item)
                except ValueError:
                    continue
                keep.append(item)

            removed = len(items) - len(keep)
            if removed:
                await self.store.replace_list(key, keep)
                logger.info(f"Repaired {key}: removed {removed} of {len(items)} entries")
            report.append(RepairedList(key=key, total=len(items), kept=len(keep), removed=removed))

        return RepairReport(report=report)


# Convenience function
def get_message_log(store: KVStore, keys: Optional[KeySpace] = None) -> MessageLog:
    """Get a message log instance."""
    return MessageLog(store, keys)
