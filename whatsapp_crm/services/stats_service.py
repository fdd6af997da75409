"""
Stats Service - dashboard counters

Handles:
- Contacts active today / yesterday (per stats timezone)
- Contacts whose last activity falls inside a time range
- Purchase counters: contacts with purchases, conversion %, daily counts
  or counts inside a YYYY-MM-DD range

All day boundaries are computed in the configured timezone. Stored
timestamps below 1e12 are treated as seconds.
"""

import json
import math
import logging
from datetime import datetime, date, time, timedelta, timezone
from typing import Optional, List, Any
from zoneinfo import ZoneInfo

from ..errors import StorageUnavailableError, ValidationError
from ..models import Contact, ContactsTodayStats, ContactsRangeStats, PurchaseStats
from ..storage import KVStore, KeySpace
from .conversation_service import ConversationService

logger = logging.getLogger(__name__)

# Purchases read per contact list
PURCHASE_SCAN_LIMIT = 101


def to_millis(value: Any) -> Optional[int]:
    """Epoch ms from a stored timestamp (seconds or ms), None if unusable."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number * 1000 if number < 1e12 else number)


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StatsService:
    """Read-only counters over contacts and purchases."""

    def __init__(
        self,
        store: KVStore,
        conversations: ConversationService,
        keys: Optional[KeySpace] = None,
        inbox_ids: Optional[List[str]] = None,
        tz_name: str = "America/Argentina/Buenos_Aires",
    ):
        """
        Initialize stats service.

        Args:
            store: Key-value store
            conversations: Used to list contacts per inbox
            keys: Key layout
            inbox_ids: Inboxes counted by ``contacts_today``
            tz_name: IANA timezone for day boundaries
        """
        self.store = store
        self.conversations = conversations
        self.keys = keys or KeySpace()
        self.inbox_ids = inbox_ids or ["ventas", "soporte"]
        self.tz_name = tz_name
        self.tz = ZoneInfo(tz_name)

    def _local_date(self, millis: int) -> date:
        return datetime.fromtimestamp(millis / 1000, tz=self.tz).date()

    def _now(self, now: Optional[datetime]) -> datetime:
        return (now or datetime.now(timezone.utc)).astimezone(self.tz)

    async def _scan(self, kind: str) -> List[str]:
        """Keys of one kind, empty (with a warning) while the store is down."""
        try:
            return await self.store.scan_keys(self.keys.pattern(kind))
        except StorageUnavailableError as e:
            logger.warning(f"Stats scan of {kind} keys failed: {e}")
            return []

    # =========================================================================
    # Contacts
    # =========================================================================

    async def contacts_today(self, now: Optional[datetime] = None) -> ContactsTodayStats:
        """Contacts of every inbox, with those active today and yesterday."""
        contacts: List[Contact] = []
        for inbox_id in self.inbox_ids:
            contacts.extend(await self.conversations.list_inbox_contacts(inbox_id))

        today = self._now(now).date()
        yesterday = today - timedelta(days=1)

        today_count = 0
        yesterday_count = 0
        for contact in contacts:
            millis = to_millis(contact.last_message_at)
            if not millis:
                continue
            day = self._local_date(millis)
            if day == today:
                today_count += 1
            elif day == yesterday:
                yesterday_count += 1

        return ContactsTodayStats(
            total=len(contacts),
            today=today_count,
            yesterday=yesterday_count,
            tz=self.tz_name,
        )

    def parse_bound(self, value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
        """
        Parse a range bound.

        A bare date (YYYY-MM-DD) means start of that day in the stats
        timezone, or its last millisecond when ``end_of_day``. Full ISO
        datetimes are taken as given (UTC when naive).
        """
        if not value:
            return None
        try:
            day = date.fromisoformat(value)
        except ValueError:
            parsed = _parse_iso(value)
            if parsed is None:
                raise ValidationError("INVALID_PAYLOAD", f"Invalid date: {value}")
            return parsed
        bound = datetime.combine(day, time.max if end_of_day else time.min, tzinfo=self.tz)
        return bound

    async def contacts_range(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ContactsRangeStats:
        """
        Count contacts whose ``lastMessageAt`` falls in [start, end].

        Defaults: start of today (stats timezone) to now.
        """
        current = self._now(now)
        start_dt = self.parse_bound(start) or datetime.combine(current.date(), time.min, tzinfo=self.tz)
        end_dt = self.parse_bound(end, end_of_day=True) or current
        start_ms = int(start_dt.timestamp() * 1000)
        end_ms = int(end_dt.timestamp() * 1000)

        total = 0
        in_range = 0
        for key in await self._scan("contact"):
            try:
                data = await self.store.hgetall(key)
            except StorageUnavailableError as e:
                logger.warning(f"Stats skipped {key}: {e}")
                continue
            if not data:
                continue
            total += 1
            millis = to_millis(data.get("lastMessageAt"))
            if millis and start_ms <= millis <= end_ms:
                in_range += 1

        return ContactsRangeStats(
            total=total,
            in_range=in_range,
            start=start_dt.isoformat(),
            end=end_dt.isoformat(),
            tz=self.tz_name,
        )

    # =========================================================================
    # Purchases
    # =========================================================================

    def _purchase_millis(self, raw: str) -> Optional[int]:
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        if data.get("createdAt"):
            parsed = _parse_iso(str(data["createdAt"]))
            return int(parsed.timestamp() * 1000) if parsed else None
        if data.get("ts") is not None:
            return to_millis(data["ts"])
        return None

    async def purchase_stats(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PurchaseStats:
        """
        Purchase counters.

        Without a range: contacts with purchase lists, how many hold at least
        one dated purchase, conversion % and purchases today / yesterday.
        With ``start`` and/or ``end`` (YYYY-MM-DD, inclusive; a missing bound
        takes the other one): only the purchase count inside the range.
        """
        today = self._now(now).date()
        yesterday = today - timedelta(days=1)
        is_range = bool(start or end)
        range_start = start or end or today.isoformat()
        range_end = end or start or today.isoformat()

        keys = await self._scan("purchases")

        with_purchases = 0
        today_count = 0
        yesterday_count = 0
        range_count = 0

        for key in keys:
            try:
                entries = await self.store.lrange(key, 0, PURCHASE_SCAN_LIMIT - 1)
            except StorageUnavailableError as e:
                logger.warning(f"Stats skipped {key}: {e}")
                continue

            dated = False
            for raw in entries:
                millis = self._purchase_millis(raw)
                if not millis:
                    continue
                dated = True
                day = self._local_date(millis)
                if is_range:
                    if range_start <= day.isoformat() <= range_end:
                        range_count += 1
                elif day == today:
                    today_count += 1
                elif day == yesterday:
                    yesterday_count += 1

            if dated:
                with_purchases += 1

        if is_range:
            return PurchaseStats(
                tz=self.tz_name,
                purchases=range_count,
                start=range_start,
                end=range_end,
            )

        total = len(keys)
        return PurchaseStats(
            tz=self.tz_name,
            total=total,
            with_purchases=with_purchases,
            conversion=round(with_purchases / total * 100) if total else 0,
            today=today_count,
            yesterday=yesterday_count,
        )


# Convenience function
def get_stats_service(
    store: KVStore,
    conversations: ConversationService,
    keys: Optional[KeySpace] = None,
    inbox_ids: Optional[List[str]] = None,
    tz_name: str = "America/Argentina/Buenos_Aires",
) -> StatsService:
    """Get a stats service instance."""
    return StatsService(store, conversations, keys, inbox_ids, tz_name)
