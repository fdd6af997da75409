"""
Tests for dashboard stats.

Tests:
- Today / yesterday computed in the Buenos Aires timezone
- Second-based timestamps
- Contacts in a range
- Purchase counters, daily and ranged
"""

import json
from datetime import datetime, timezone

import pytest

from whatsapp_crm.models import ContactPatch
from whatsapp_crm.services.stats_service import to_millis

# 12:00 in Buenos Aires (UTC-3)
NOW = datetime(2025, 11, 9, 15, 0, tzinfo=timezone.utc)


def ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def test_to_millis_accepts_seconds_and_millis():
    assert to_millis(1_700_000_000) == 1_700_000_000_000
    assert to_millis("1700000000000") == 1_700_000_000_000
    assert to_millis("nan") is None
    assert to_millis(None) is None


@pytest.mark.asyncio
async def test_contacts_today_uses_local_days(stats, contacts):
    # 10:00 BA today
    await contacts.upsert("1", ContactPatch(last_message_at=ms(2025, 11, 9, 13, 0), inbox_id="ventas"))
    # 23:30 BA yesterday, already the 9th in UTC
    await contacts.upsert("2", ContactPatch(last_message_at=ms(2025, 11, 9, 2, 30), inbox_id="soporte"))
    await contacts.upsert("3", ContactPatch(last_message_at=ms(2025, 11, 1, 12, 0), inbox_id="ventas"))
    # Stored in seconds by an older writer, 09:00 BA today
    await contacts.upsert("4", ContactPatch(last_message_at=ms(2025, 11, 9, 12, 0) // 1000, inbox_id="ventas"))
    # Not in a counted inbox
    await contacts.upsert("5", ContactPatch(last_message_at=ms(2025, 11, 9, 13, 0), inbox_id="otros"))

    result = await stats.contacts_today(now=NOW)

    assert result.total == 4
    assert result.today == 2
    assert result.yesterday == 1
    assert result.tz == "America/Argentina/Buenos_Aires"


@pytest.mark.asyncio
async def test_contacts_range_by_local_dates(stats, contacts):
    await contacts.upsert("1", ContactPatch(last_message_at=ms(2025, 11, 9, 13, 0)))
    await contacts.upsert("2", ContactPatch(last_message_at=ms(2025, 11, 9, 2, 30)))
    await contacts.upsert("3", ContactPatch(last_message_at=ms(2025, 11, 1, 12, 0)))

    result = await stats.contacts_range("2025-11-08", "2025-11-08", now=NOW)

    assert result.total == 3
    assert result.in_range == 1
    assert result.start.startswith("2025-11-08T00:00:00")


@pytest.mark.asyncio
async def test_contacts_range_defaults_to_today(stats, contacts):
    await contacts.upsert("1", ContactPatch(last_message_at=ms(2025, 11, 9, 13, 0)))
    await contacts.upsert("2", ContactPatch(last_message_at=ms(2025, 11, 9, 2, 30)))

    result = await stats.contacts_range(now=NOW)

    assert result.in_range == 1


@pytest.mark.asyncio
async def test_purchase_stats_daily(stats, store):
    store.lists["purchases:1"] = [
        json.dumps({"id": "a", "createdAt": "2025-11-09T14:00:00.000Z"}),
        json.dumps({"id": "b", "createdAt": "2025-11-09T01:00:00.000Z"}),
    ]
    store.lists["purchases:2"] = [json.dumps({"id": "c", "ts": ms(2025, 11, 9, 13, 0) // 1000})]
    store.lists["purchases:3"] = ["{broken"]

    result = await stats.purchase_stats(now=NOW)

    assert result.total == 3
    assert result.with_purchases == 2
    assert result.conversion == 67
    assert result.today == 2
    assert result.yesterday == 1
    assert result.purchases is None


@pytest.mark.asyncio
async def test_purchase_stats_range(stats, store):
    store.lists["purchases:1"] = [
        json.dumps({"id": "a", "createdAt": "2025-11-09T14:00:00.000Z"}),
        json.dumps({"id": "b", "createdAt": "2025-11-05T14:00:00.000Z"}),
        json.dumps({"id": "c", "createdAt": "2025-10-30T14:00:00.000Z"}),
    ]

    result = await stats.purchase_stats(start="2025-11-01", end="2025-11-09", now=NOW)
    assert result.purchases == 2
    assert (result.start, result.end) == ("2025-11-01", "2025-11-09")
    assert result.total is None

    single_day = await stats.purchase_stats(start="2025-11-05", now=NOW)
    assert single_day.purchases == 1
    assert single_day.end == "2025-11-05"


@pytest.mark.asyncio
async def test_purchase_stats_empty(stats):
    result = await stats.purchase_stats(now=NOW)
    assert (result.total, result.with_purchases, result.conversion) == (0, 0, 0)


@pytest.mark.asyncio
async def test_stats_degrade_to_zero_while_store_is_down(stats, store, contacts):
    await contacts.upsert("1", ContactPatch(last_message_at=ms(2025, 11, 9, 13, 0)))
    store.lists["purchases:1"] = [json.dumps({"id": "a", "createdAt": "2025-11-09T14:00:00.000Z"})]
    store.unavailable = True

    in_range = await stats.contacts_range(now=NOW)
    assert (in_range.total, in_range.in_range) == (0, 0)

    daily = await stats.purchase_stats(now=NOW)
    assert (daily.total, daily.with_purchases, daily.today) == (0, 0, 0)

    ranged = await stats.purchase_stats(start="2025-11-01", now=NOW)
    assert ranged.purchases == 0
