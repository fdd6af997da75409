"""
HTTP tests for the webhook and API routes.

Tests:
- Twilio inbound webhook: contact patch, attribution, media, dedupe, meta
- Twilio signature validation
- Notification sent only for known contacts or customer codes
- Contact, message, purchase, delete, stats and maintenance routes
- Error rendering
"""

import json

import httpx
import pytest

from conftest import VENTAS_NUMBER, SOPORTE_NUMBER
from whatsapp_crm.clients import NotificationWebhookClient
from whatsapp_crm.main import create_app
from whatsapp_crm.webhooks import InboundWebhookHandler


def twilio_form(**overrides):
    form = {
        "From": "whatsapp:+5491112345678",
        "To": f"whatsapp:{VENTAS_NUMBER}",
        "Body": "Hola, quiero info",
        "WaId": "5491112345678",
        "MessageSid": "SM0001",
        "ProfileName": "Ana",
        "NumMedia": "0",
    }
    form.update(overrides)
    return form


class RecordingNotifier:
    def __init__(self):
        self.messages = []
        self.purchases = []

    async def notify_message(self, **kwargs):
        self.messages.append(kwargs)
        return True

    async def notify_purchase(self, **kwargs):
        self.purchases.append(kwargs)
        return True

    async def close(self):
        pass


# =============================================================================
# Webhook
# =============================================================================


@pytest.mark.asyncio
async def test_inbound_message_creates_contact(client, store):
    response = await client.post("/api/webhook/twilio", data=twilio_form())

    assert response.status_code == 204
    contact = store.hashes["contact:5491112345678"]
    assert contact["name"] == "Ana"
    assert contact["lastText"] == "Hola, quiero info"
    assert contact["inbox_id"] == "ventas"
    assert contact["source_type"] == "organic"
    assert "5491112345678" in store.zsets["idx:contacts"]

    message = json.loads(store.lists["messages:5491112345678"][0])
    assert message["id"] == "SM0001"
    assert message["direction"] == "in"
    # Meta carries only a referral or previously stored source
    assert store.hashes["message_meta:SM0001"]["source_type"] == ""


@pytest.mark.asyncio
async def test_inbound_referral_marks_contact_as_ad(client, store):
    form = twilio_form(
        To=f"whatsapp:{SOPORTE_NUMBER}",
        ReferralCtwaClid="ARAkLkA",
        ReferralSourceUrl="https://fb.me/x?campaign_id=1&adset_id=2&ad_id=3",
        ReferralSourceType="ad",
    )
    await client.post("/api/webhook/twilio", data=form)

    contact = store.hashes["contact:5491112345678"]
    assert contact["ctwa_clid"] == "ARAkLkA"
    assert contact["source_type"] == "ad"
    assert (contact["campaign_id"], contact["adset_id"], contact["ad_id"]) == ("1", "2", "3")
    assert contact["inbox_id"] == "soporte"
    assert store.hashes["message_meta:SM0001"]["ctwa_clid"] == "ARAkLkA"

    # A later organic message keeps the ad source
    await client.post("/api/webhook/twilio", data=twilio_form(MessageSid="SM0002"))
    assert store.hashes["contact:5491112345678"]["source_type"] == "ad"


@pytest.mark.asyncio
async def test_inbound_media_and_customer_code(client, store):
    form = twilio_form(
        Body="",
        NumMedia="1",
        MediaUrl0="https://api.twilio.com/media/ME1",
        MediaContentType0="application/pdf",
    )
    await client.post("/api/webhook/twilio", data=form)

    contact = store.hashes["contact:5491112345678"]
    assert contact["lastText"] == "[media]"
    message = json.loads(store.lists["messages:5491112345678"][0])
    assert message["media_url"] == "https://api.twilio.com/media/ME1"
    assert message["media_type"] == "pdf"

    await client.post("/api/webhook/twilio", data=twilio_form(MessageSid="SM0002", Body="my code is ab12cd34"))
    assert store.hashes["contact:5491112345678"]["customer_code"] == "AB12CD34"


@pytest.mark.asyncio
async def test_duplicate_webhook_is_ignored(client, store):
    await client.post("/api/webhook/twilio", data=twilio_form())
    before = dict(store.hashes["contact:5491112345678"])

    response = await client.post("/api/webhook/twilio", data=twilio_form(Body="otra vez"))

    assert response.status_code == 204
    assert len(store.lists["messages:5491112345678"]) == 1
    assert store.hashes["contact:5491112345678"] == before


@pytest.mark.asyncio
async def test_notification_only_for_known_contacts(app, client):
    notifier = RecordingNotifier()
    app.state.notifier = notifier

    await client.post("/api/webhook/twilio", data=twilio_form())
    assert notifier.messages == [], "First message from an unknown contact without a code"

    await client.post("/api/webhook/twilio", data=twilio_form(MessageSid="SM0002"))
    assert len(notifier.messages) == 1
    assert notifier.messages[0]["contact_id"] == "5491112345678"

    await client.post(
        "/api/webhook/twilio",
        data=twilio_form(WaId="5491199999999", MessageSid="SM0003", Body="código de bonus es QWER1234"),
    )
    assert notifier.messages[-1]["customer_code"] == "QWER1234"


@pytest.mark.asyncio
async def test_twilio_signature_validation(app, client, settings):
    settings.twilio_validate_signature = True
    settings.twilio_auth_token_ventas = "secret"
    form = twilio_form()
    url = settings.app_base_url.rstrip("/") + "/api/webhook/twilio"

    rejected = await client.post("/api/webhook/twilio", data=form, headers={"X-Twilio-Signature": "bad"})
    assert rejected.status_code == 403

    signature = InboundWebhookHandler.compute_signature("secret", url, form)
    accepted = await client.post("/api/webhook/twilio", data=form, headers={"X-Twilio-Signature": signature})
    assert accepted.status_code == 204


@pytest.mark.asyncio
async def test_signature_validation_without_token_is_503(client, settings, store):
    settings.twilio_validate_signature = True
    form = twilio_form(To=f"whatsapp:{SOPORTE_NUMBER}")

    response = await client.post("/api/webhook/twilio", data=form, headers={"X-Twilio-Signature": "any"})

    assert response.status_code == 503
    assert response.json() == {"ok": False, "error": "CONFIGURATION_MISSING"}
    assert "contact:5491112345678" not in store.hashes


@pytest.mark.asyncio
async def test_customer_code_webhook_tags_contact(client, store):
    await client.post("/api/webhook/twilio", data=twilio_form(Body="MY CODE IS ZX12CV34"))

    response = await client.post("/api/webhook/customer-code", json={"customer_code": "zx12cv34"})
    assert response.json() == {"ok": True, "contact": "contact:5491112345678"}
    assert store.hashes["contact:5491112345678"]["tag"] == "Tracked"

    bad = await client.post("/api/webhook/customer-code", json={"customer_code": "short"})
    assert bad.status_code == 400 and bad.json() == {"ok": False, "error": "INVALID_CUSTOMER_CODE"}

    missing = await client.post("/api/webhook/customer-code", json={"customer_code": "NOPE1234"})
    assert missing.status_code == 404 and missing.json()["error"] == "CONTACT_NOT_FOUND"


# =============================================================================
# Contacts and messages
# =============================================================================


@pytest.mark.asyncio
async def test_contact_routes(client):
    await client.post("/api/webhook/twilio", data=twilio_form())
    await client.post("/api/webhook/twilio", data=twilio_form(MessageSid="SM0002", Body="segundo"))

    listing = await client.get("/api/contacts", params={"inbox_id": "ventas"})
    assert [c["wa_id"] for c in listing.json()["contacts"]] == ["5491112345678"]

    index = await client.get("/api/contacts/index", params={"limit": 1})
    assert index.json()["nextCursor"] == 1

    detail = await client.get("/api/contacts/5491112345678", params={"limit": "1"})
    body = detail.json()
    assert body["contact"]["lastText"] == "segundo"
    assert [m["text"] for m in body["messages"]] == ["segundo"]
    assert body["nextOffset"] == 1

    full = await client.get("/api/contacts/5491112345678/messages", params={"limit": "all"})
    assert [m["text"] for m in full.json()["messages"]] == ["Hola, quiero info", "segundo"]

    export = await client.get("/api/contacts/export")
    assert export.json()["contacts"] == [{"wa_id": "5491112345678"}]


@pytest.mark.asyncio
async def test_unknown_contact_is_404(client):
    response = await client.get("/api/contacts/549000")
    assert response.status_code == 404
    assert response.json() == {"ok": False, "error": "NOT_FOUND"}


@pytest.mark.asyncio
async def test_record_outbound_message(client, store):
    await client.post("/api/webhook/twilio", data=twilio_form())

    response = await client.post(
        "/api/contacts/5491112345678/messages",
        json={"sid": "SMout1", "from": f"whatsapp:{VENTAS_NUMBER}", "text": "Hola Ana!", "inbox_id": "ventas"},
    )

    assert response.json()["recorded"] is True
    assert response.json()["message"]["direction"] == "out"
    assert store.hashes["contact:5491112345678"]["lastText"] == "Hola Ana!"

    again = await client.post("/api/contacts/5491112345678/messages", json={"sid": "SMout1", "text": "Hola Ana!"})
    assert again.json()["recorded"] is False


@pytest.mark.asyncio
async def test_inspect_route(client):
    await client.post("/api/webhook/twilio", data=twilio_form(ReferralCtwaClid="ARAkLkA"))

    response = await client.get("/api/contacts/5491112345678/inspect")
    result = response.json()["result"]

    assert result["waId"] == "5491112345678"
    assert result["chosen"] == {"key": "ctwa_clid", "value": "ARAkLkA"}


@pytest.mark.asyncio
async def test_delete_preview_then_confirm(client, store):
    await client.post("/api/webhook/twilio", data=twilio_form())

    preview = await client.get("/api/contacts/+5491112345678/delete")
    assert preview.json()["waIdNumeric"] == "5491112345678"
    assert "contact:5491112345678" in preview.json()["preview"]
    assert "contact:5491112345678" in store.hashes

    deleted = await client.get("/api/contacts/5491112345678/delete", params={"confirm": "1"})
    assert deleted.json()["deleted"]["removedFromIndex"] == ["5491112345678"]
    assert "contact:5491112345678" not in store.hashes


@pytest.mark.asyncio
async def test_assign_inbox_route(client):
    await client.post("/api/webhook/twilio", data=twilio_form())

    response = await client.post("/api/contacts/5491112345678/inbox", json={"inbox_id": "soporte"})
    assert response.json()["inbox_id"] == "soporte"


# =============================================================================
# Purchases
# =============================================================================


@pytest.mark.asyncio
async def test_purchase_routes(app, client):
    notifier = RecordingNotifier()
    app.state.notifier = notifier
    await client.post("/api/webhook/twilio", data=twilio_form(Body="my code is ab12cd34"))

    created = await client.post("/api/contacts/5491112345678/purchases", json={"amount": 1500})
    purchase = created.json()["purchase"]
    assert purchase["currency"] == "ARS"
    assert purchase["capiStatus"] == "pending"
    assert notifier.purchases[0]["customer_code"] == "AB12CD34"

    listed = await client.get("/api/contacts/5491112345678/purchases")
    assert [p["id"] for p in listed.json()["purchases"]] == [purchase["id"]]

    bulk = await client.post("/api/contacts/purchases-bulk", json={"waIds": ["5491112345678", "549000"]})
    assert bulk.json()["result"] == {"5491112345678": True, "549000": False}


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [-5, "abc", None])
async def test_purchase_invalid_amount(client, amount):
    response = await client.post("/api/contacts/549111/purchases", json={"amount": amount})
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "INVALID_AMOUNT"}


# =============================================================================
# Stats, maintenance, health
# =============================================================================


@pytest.mark.asyncio
async def test_stats_routes(client):
    await client.post("/api/webhook/twilio", data=twilio_form())
    await client.post("/api/contacts/5491112345678/purchases", json={"amount": 10})

    today = (await client.get("/api/stats/contacts-today")).json()
    assert today["total"] == 1 and today["hoy"] == 1

    rng = (await client.get("/api/stats/contacts-range")).json()
    assert rng["enRango"] == 1

    purchases = (await client.get("/api/stats/purchases")).json()
    assert purchases["conCargas"] == 1 and purchases["conversion"] == 100
    assert "cargas" not in purchases


@pytest.mark.asyncio
async def test_maintenance_routes(client, store):
    store.lists["messages:1"] = ['{"id": "a"}', "broken"]
    store.hashes["contact:1"] = {"wa_id": "1", "lastMessageAt": "42"}

    repaired = (await client.post("/api/maintenance/repair-messages")).json()
    assert repaired["report"][0]["removed"] == 1

    reconciled = (await client.post("/api/maintenance/reconcile-index")).json()
    assert reconciled["added"] == 1
    assert store.zsets["idx:contacts"]["1"] == 42


@pytest.mark.asyncio
async def test_health_and_ready(client, store):
    assert (await client.get("/health")).json()["status"] == "ok"
    assert (await client.get("/ready")).status_code == 200

    store.unavailable = True
    assert (await client.get("/ready")).status_code == 503


@pytest.mark.asyncio
async def test_storage_outage_on_write_is_503(client, store):
    store.unavailable = True
    response = await client.post("/api/contacts/549111/purchases", json={"amount": 10})
    assert response.status_code == 503
    assert response.json() == {"ok": False, "error": "STORAGE_UNAVAILABLE"}


@pytest.mark.asyncio
async def test_lifespan_builds_clients_from_app_settings(store, settings):
    app_settings = settings.model_copy(update={
        "notification_webhook_url": "http://hooks.example/x",
        "capi_reporting_enabled": True,
        "meta_pixel_id": "PIXEL",
        "meta_capi_access_token": "TOKEN",
    })
    app = create_app(store=store, settings=app_settings)

    async with app.router.lifespan_context(app):
        assert app.state.notifier.url == "http://hooks.example/x"
        assert app.state.capi_client.pixel_id == "PIXEL"


@pytest.mark.asyncio
async def test_notification_client_skips_without_url():
    client = NotificationWebhookClient(url=None)
    assert await client.send({"x": 1}) is False


@pytest.mark.asyncio
async def test_notification_client_swallows_http_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = NotificationWebhookClient(url="https://hooks.example/abc", http_client=http)

    assert await client.send({"x": 1}) is False
    await client.close()
