"""
Shared fixtures for the WhatsApp CRM tests.

Every test runs against a fresh InMemoryKVStore; nothing touches Redis or
the network.
"""

import httpx
import pytest
import pytest_asyncio

from whatsapp_crm.config import CRMSettings
from whatsapp_crm.main import create_app
from whatsapp_crm.models import Message, MessageDirection
from whatsapp_crm.services import (
    AttributionService,
    ContactRepository,
    ConversationService,
    MessageLog,
    PurchaseLedger,
    StatsService,
)
from whatsapp_crm.storage import InMemoryKVStore, KeySpace

VENTAS_NUMBER = "+15077065642"
SOPORTE_NUMBER = "+15077065643"


def make_message(
    msg_id: str,
    timestamp: int,
    text: str = "hola",
    direction: MessageDirection = MessageDirection.IN,
    **kwargs,
) -> Message:
    """Build a message with sensible defaults."""
    return Message(
        id=msg_id,
        from_=kwargs.pop("from_", "whatsapp:+5491112345678"),
        to=kwargs.pop("to", f"whatsapp:{VENTAS_NUMBER}"),
        text=text,
        timestamp=timestamp,
        direction=direction,
        **kwargs,
    )


@pytest.fixture
def settings() -> CRMSettings:
    return CRMSettings(
        _env_file=None,
        redis_url="redis://unused:6379",
        crm_key_prefix="",
        default_inbox_id="ventas",
        inbox_numbers={"ventas": VENTAS_NUMBER, "soporte": SOPORTE_NUMBER},
        notification_webhook_url=None,
        capi_reporting_enabled=False,
        twilio_validate_signature=False,
        stats_timezone="America/Argentina/Buenos_Aires",
    )


@pytest.fixture
def store() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture
def keys() -> KeySpace:
    return KeySpace()


@pytest.fixture
def contacts(store, keys) -> ContactRepository:
    return ContactRepository(store, keys)


@pytest.fixture
def messages(store, keys) -> MessageLog:
    return MessageLog(store, keys)


@pytest.fixture
def conversations(contacts, messages, settings) -> ConversationService:
    return ConversationService(
        contacts,
        messages,
        inbox_numbers=settings.inbox_numbers,
        default_inbox_id=settings.default_inbox_id,
    )


@pytest.fixture
def attribution(contacts, messages) -> AttributionService:
    return AttributionService(contacts, messages, scan_window=10, inspect_window=20)


@pytest.fixture
def ledger(store, keys, attribution) -> PurchaseLedger:
    return PurchaseLedger(store, keys, attribution=attribution)


@pytest.fixture
def stats(store, keys, conversations, settings) -> StatsService:
    return StatsService(
        store,
        conversations,
        keys,
        inbox_ids=list(settings.inbox_numbers),
        tz_name=settings.stats_timezone,
    )


@pytest.fixture
def app(store, settings):
    return create_app(store=store, settings=settings)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
