"""
Tests for the conversation service.

Tests:
- Recording messages refreshes contact recency and last text
- Duplicate deliveries leave the contact untouched
- Contact + messages reads, inbox filter after pagination
- Inbox listings and exports
"""

import pytest

from conftest import make_message, SOPORTE_NUMBER
from whatsapp_crm.errors import NotFoundError
from whatsapp_crm.models import ContactPatch, MessageDirection
from whatsapp_crm.services import detect_inbox


def test_detect_inbox_by_receiving_number():
    numbers = {"ventas": "+1500", "soporte": "+1600"}
    assert detect_inbox("whatsapp:+1600", numbers, "ventas") == "soporte"
    assert detect_inbox("whatsapp:+1999", numbers, "ventas") == "ventas"
    assert detect_inbox(None, numbers, "ventas") == "ventas"


@pytest.mark.asyncio
async def test_record_message_updates_contact(conversations, store):
    contact = await conversations.record_message(
        "whatsapp:+549111",
        make_message("m1", 1_700_000_000_000, text="quiero info"),
        ContactPatch(display_name="Ana"),
    )

    assert contact.id == "549111"
    assert contact.last_message_at == 1_700_000_000_000
    assert contact.last_text == "quiero info"
    assert contact.display_name == "Ana"
    assert contact.inbox_id == "ventas"
    assert store.zsets["idx:contacts"]["549111"] == 1_700_000_000_000


@pytest.mark.asyncio
async def test_record_media_message_uses_placeholder(conversations):
    contact = await conversations.record_message(
        "549111",
        make_message("m1", 1000, text="", media_url="https://cdn.example/x.jpg", media_type="image"),
    )
    assert contact.last_text == "[media]"


@pytest.mark.asyncio
async def test_inbound_without_inbox_detects_it_from_receiver(conversations):
    message = make_message("m1", 1000, to=f"whatsapp:{SOPORTE_NUMBER}")
    contact = await conversations.record_message("549111", message)
    assert contact.inbox_id == "soporte"


@pytest.mark.asyncio
async def test_duplicate_delivery_leaves_contact_unchanged(conversations, messages, store):
    await conversations.record_message("549111", make_message("SM1", 1000), dedupe_key="SM1")
    before = dict(store.hashes["contact:549111"])

    result = await conversations.record_message("549111", make_message("SM1", 5000), dedupe_key="SM1")

    assert result is None
    assert await messages.length("549111") == 1
    assert store.hashes["contact:549111"] == before
    assert store.zsets["idx:contacts"]["549111"] == 1000


@pytest.mark.asyncio
async def test_get_contact_with_messages(conversations):
    await conversations.record_message("549111", make_message("m1", 1000, inbox_id="ventas"))
    await conversations.record_message("549111", make_message("m2", 2000, inbox_id="soporte"))
    await conversations.record_message(
        "549111", make_message("m3", 3000, direction=MessageDirection.OUT, inbox_id="ventas")
    )

    result = await conversations.get_contact_with_messages("549111", 0, 50)
    assert [m.id for m in result.messages] == ["m1", "m2", "m3"]
    assert result.contact.last_text == "hola"

    filtered = await conversations.get_contact_with_messages("549111", 0, 50, inbox_filter="ventas")
    assert [m.id for m in filtered.messages] == ["m1", "m3"]


@pytest.mark.asyncio
async def test_inbox_filter_applies_after_pagination(conversations):
    await conversations.record_message("549111", make_message("m1", 1000, inbox_id="ventas"))
    await conversations.record_message("549111", make_message("m2", 2000, inbox_id="soporte"))
    await conversations.record_message("549111", make_message("m3", 3000, inbox_id="soporte"))

    page = await conversations.get_contact_with_messages("549111", 0, 2, inbox_filter="ventas")

    assert page.messages == [], "Newest two are soporte; the ventas message is on the next page"
    assert page.next_offset == 2


@pytest.mark.asyncio
async def test_missing_contact_is_not_found(conversations):
    with pytest.raises(NotFoundError):
        await conversations.get_contact_with_messages("549999")


@pytest.mark.asyncio
async def test_list_inbox_contacts_with_since(conversations):
    await conversations.record_message("1", make_message("a", 1000, inbox_id="ventas"))
    await conversations.record_message("2", make_message("b", 5000, inbox_id="ventas"))
    await conversations.record_message("3", make_message("c", 6000, inbox_id="soporte"))

    all_ventas = await conversations.list_inbox_contacts("ventas")
    assert [c.id for c in all_ventas] == ["2", "1"]

    recent = await conversations.list_inbox_contacts("ventas", since=2000)
    assert [c.id for c in recent] == ["2"]


@pytest.mark.asyncio
async def test_export_contact_ids(conversations, contacts):
    await conversations.record_message("1", make_message("a", 1000, inbox_id="ventas"))
    await conversations.record_message("2", make_message("b", 2000, inbox_id="soporte"))

    exported = await conversations.export_contact_ids()
    assert [c.wa_id for c in exported] == ["2", "1"]

    only_ventas = await conversations.export_contact_ids("ventas")
    assert [c.wa_id for c in only_ventas] == ["1"]


@pytest.mark.asyncio
async def test_assign_inbox(conversations):
    await conversations.record_message("549111", make_message("m1", 1000))

    contact = await conversations.assign_inbox("549111", "soporte")
    assert contact.inbox_id == "soporte"
    assert contact.last_message_at == 1000

    with pytest.raises(NotFoundError):
        await conversations.assign_inbox("549999", "soporte")
