"""
Contact Repository - contact records and the recency index

Handles:
- Contact upsert (shallow merge + index write as one unit)
- Recency-ordered pagination over ``idx:contacts``
- Administrative delete across historical id formats
- Index reconciliation
"""

import logging
from typing import Optional, List, Dict, Any, Union

from ..errors import NotFoundError, StorageUnavailableError, ValidationError
from ..models import (
    Contact,
    ContactPatch,
    ContactListResponse,
    DeleteResult,
    ReconcileReport,
    SourceType,
    CONTACT_HASH_FIELDS,
)
from ..storage import KVStore, KeySpace, normalize_id

logger = logging.getLogger(__name__)

_LAST_MESSAGE_AT = CONTACT_HASH_FIELDS["last_message_at"]
_LAST_TEXT = CONTACT_HASH_FIELDS["last_text"]
_SOURCE_TYPE = CONTACT_HASH_FIELDS["source_type"]


class ContactRepository:
    """
    Owns ``contact:{id}`` hashes and the ``idx:contacts`` sorted set.

    Every write that touches a contact hash also rewrites its index score,
    so the score always equals the stored ``lastMessageAt``.
    """

    def __init__(self, store: KVStore, keys: Optional[KeySpace] = None):
        """
        Initialize contact repository.

        Args:
            store: Key-value store
            keys: Key layout (default: no prefix)
        """
        self.store = store
        self.keys = keys or KeySpace()

    # =========================================================================
    # Writes
    # =========================================================================

    async def upsert(self, contact_id: str, patch: Union[ContactPatch, Dict[str, Any]]) -> Contact:
        """
        Merge a patch into a contact and refresh its index entry.

        Fields present in the patch replace stored values, absent fields are
        kept. A stored ``source_type`` of ``ad`` is never replaced.

        Args:
            contact_id: Contact id (normalized before use)
            patch: Fields to merge

        Returns:
            The merged contact
        """
        cid = normalize_id(contact_id)
        if not cid:
            raise ValidationError("MISSING_CONTACT_ID")
        if not isinstance(patch, ContactPatch):
            patch = ContactPatch.model_validate(patch)

        key = self.keys.contact(cid)
        prev = await self.store.hgetall(key)
        fields = patch.to_fields()

        if prev.get(_SOURCE_TYPE) == SourceType.AD.value and fields.get(_SOURCE_TYPE) not in (None, SourceType.AD.value):
            fields.pop(_SOURCE_TYPE)

        merged: Dict[str, str] = {
            CONTACT_HASH_FIELDS["id"]: cid,
            _LAST_MESSAGE_AT: "0",
            _LAST_TEXT: "",
        }
        merged.update(prev)
        merged.update(fields)
        merged[CONTACT_HASH_FIELDS["id"]] = cid

        contact = Contact.from_hash(merged, cid)
        merged[_LAST_MESSAGE_AT] = str(contact.last_message_at)

        await self.store.write_hash_with_index(
            key,
            merged,
            self.keys.contact_index,
            cid,
            contact.last_message_at,
        )

        if not prev:
            logger.info(f"Created contact {cid}")
        return contact

    async def tag(self, contact_key: str, tag: str) -> None:
        """
        Set the ``tag`` field of a stored contact key.

        Works on the key as found by a scan, so contacts stored under a
        non-normalized id are tagged in place. The score is not affected.
        """
        await self.store.hset(contact_key, {CONTACT_HASH_FIELDS["tag"]: tag})
        logger.info(f"Tagged {contact_key} as {tag}")

    async def delete(self, contact_id: str) -> DeleteResult:
        """
        Delete a contact with its messages and purchases.

        Also removes every index member whose digits equal the id, so
        entries stored before normalization ("+549...") go too.
        Idempotent.

        Args:
            contact_id: Contact id in any format

        Returns:
            Keys deleted and index members removed
        """
        cid = normalize_id(contact_id)
        if not cid:
            raise ValidationError("MISSING_CONTACT_ID")

        variants = await self.stored_variants(cid)
        keys = self._keys_for(cid, variants)

        await self.store.delete(*keys)
        if variants:
            await self.store.zrem(self.keys.contact_index, *variants)

        logger.info(f"Deleted contact {cid} (index members: {variants})")
        return DeleteResult(contact_id=cid, keys=keys, removed_from_index=variants)

    async def delete_preview(self, contact_id: str) -> DeleteResult:
        """Keys and index members ``delete`` would remove."""
        cid = normalize_id(contact_id)
        if not cid:
            raise ValidationError("MISSING_CONTACT_ID")
        variants = await self.stored_variants(cid)
        return DeleteResult(contact_id=cid, keys=self._keys_for(cid, variants), removed_from_index=variants)

    def _keys_for(self, cid: str, variants: List[str]) -> List[str]:
        keys: List[str] = []
        for stored in [*variants, cid]:
            for key in (self.keys.contact(stored), self.keys.messages(stored), self.keys.purchases(stored)):
                if key not in keys:
                    keys.append(key)
        return keys

    async def stored_variants(self, cid: str) -> List[str]:
        """Index members that normalize to ``cid``."""
        members = await self.store.zrange(self.keys.contact_index, 0, -1)
        return [m for m in members if normalize_id(m) == cid]

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, contact_id: str) -> Optional[Contact]:
        """
        Get a contact by id.

        Returns None when the contact does not exist or the store is down.
        """
        cid = normalize_id(contact_id)
        if not cid:
            return None
        try:
            data = await self.store.hgetall(self.keys.contact(cid))
        except StorageUnavailableError as e:
            logger.warning(f"Could not read contact {cid}: {e}")
            return None
        if not data:
            return None
        return Contact.from_hash(data, cid)

    async def get_fields(self, contact_id: str) -> Dict[str, str]:
        """Raw stored hash, empty when absent or unreadable."""
        cid = normalize_id(contact_id)
        if not cid:
            return {}
        try:
            return await self.store.hgetall(self.keys.contact(cid))
        except StorageUnavailableError as e:
            logger.warning(f"Could not read contact {cid}: {e}")
            return {}

    async def require(self, contact_id: str) -> Contact:
        """Get a contact or raise NotFoundError."""
        contact = await self.get(contact_id)
        if contact is None:
            raise NotFoundError("NOT_FOUND", f"Contact {contact_id} not found")
        return contact

    async def list(self, cursor: int = 0, limit: int = 30) -> ContactListResponse:
        """
        List contacts by descending ``lastMessageAt``.

        Args:
            cursor: Offset into the index
            limit: Page size

        Returns:
            Contacts plus ``next_cursor`` (None once fewer than ``limit``
            index members came back)
        """
        cursor = max(0, int(cursor))
        limit = max(1, int(limit))
        try:
            members = await self.store.zrange(
                self.keys.contact_index, cursor, cursor + limit - 1, rev=True
            )
        except StorageUnavailableError as e:
            logger.warning(f"Could not read contact index: {e}")
            return ContactListResponse(contacts=[], next_cursor=None)

        contacts: List[Contact] = []
        for member in members:
            try:
                data = await self.store.hgetall(self.keys.contact(member))
            except StorageUnavailableError as e:
                logger.warning(f"Skipping contact {member}: {e}")
                continue
            if data:
                contacts.append(Contact.from_hash(data, member))

        next_cursor = None if len(members) < limit else cursor + limit
        return ContactListResponse(contacts=contacts, next_cursor=next_cursor)

    async def find_by_customer_code(self, code: str) -> Optional[str]:
        """
        Find the contact key holding a customer code (case-insensitive).

        Returns:
            The ``contact:{id}`` key, or None
        """
        wanted = (code or "").strip().upper()
        if not wanted:
            return None
        try:
            keys = await self.store.scan_keys(self.keys.pattern("contact"))
        except StorageUnavailableError as e:
            logger.warning(f"Could not scan contacts: {e}")
            return None

        for key in keys:
            try:
                data = await self.store.hgetall(key)
            except StorageUnavailableError as e:
                logger.warning(f"Skipping {key}: {e}")
                continue
            if (data.get("customer_code") or "").upper() == wanted:
                return key
        return None

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def reconcile_index(self) -> ReconcileReport:
        """
        Recompute index scores from contact hashes.

        Repairs drift left by writers that touched the hash without the
        index: missing members are added and wrong scores rewritten.
        """
        report = ReconcileReport()
        keys = await self.store.scan_keys(self.keys.pattern("contact"))

        for key in keys:
            member = self.keys.id_from_key(key, "contact")
            if not member:
                continue
            report.scanned += 1
            try:
                data = await self.store.hgetall(key)
                if not data:
                    continue
                score = Contact.from_hash(data, member).last_message_at
                current = await self.store.zscore(self.keys.contact_index, member)
                if current is None:
                    report.added += 1
                elif int(current) != score:
                    report.rescored += 1
                else:
                    continue
                await self.store.zadd(self.keys.contact_index, member, score)
            except StorageUnavailableError as e:
                logger.warning(f"Reconcile skipped {key}: {e}")
                report.skipped += 1

        logger.info(
            f"Index reconciled: {report.scanned} scanned, "
            f"{report.added} added, {report.rescored} rescored"
        )
        return report


# Convenience function
def get_contact_repository(store: KVStore, keys: Optional[KeySpace] = None) -> ContactRepository:
    """Get a contact repository instance."""
    return ContactRepository(store, keys)
