import pytest
import pytest_asyncio
from aiohttp import test_utils

from comms.config import config
from comms.database.models import Channel, CreditType, MessageStatus
from comms.main import create_app
from comms.services import ledger_service, thread_service
from comms.services.transports.twilio import compute_signature

from conftest import GUEST_PHONE, GUEST_EMAIL, PROPERTY_PHONE, PROPERTY_EMAIL, suggestion


@pytest_asyncio.fixture
async def client(runtime):
    async with test_utils.TestClient(test_utils.TestServer(create_app(runtime))) as client:
        yield client


def _sms_form(sid="SMweb1", body="Is early check-in possible?"):
    return {"MessageSid": sid, "From": GUEST_PHONE, "To": PROPERTY_PHONE, "Body": body}


@pytest.mark.asyncio
async def test_healthz(client):
    response = await client.get("/healthz")
    assert response.status == 200
    assert await response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_inbound_sms_returns_empty_twiml_and_dedupes(client, async_session, provider, sms, seeded):
    provider.response = suggestion(needs_human=True)

    first = await client.post("/webhooks/twilio/sms", data=_sms_form())
    second = await client.post("/webhooks/twilio/sms", data=_sms_form())

    assert first.status == 200
    assert first.content_type == "text/xml"
    assert "<Response></Response>" in await first.text()
    assert second.status == 200
    assert sms.sent == []

    thread = await thread_service.get_thread_for_stay(async_session, seeded.stay_id)
    response = await client.get(f"/api/threads/{thread.id}")
    data = await response.json()
    assert data["thread"]["status"] == "needs_human"
    assert [m["body"] for m in data["messages"]] == ["Is early check-in possible?"]
    assert data["messages"][0]["direction"] == "inbound"


@pytest.mark.asyncio
async def test_inbound_sms_with_missing_fields(client):
    response = await client.post("/webhooks/twilio/sms", data={"Body": "hi"})
    assert response.status == 400
    assert (await response.json())["type"] == "ValidationError"


@pytest.mark.asyncio
async def test_twilio_signature_enforced(client, monkeypatch, provider, seeded):
    monkeypatch.setattr(config, "TWILIO_VALIDATE_SIGNATURE", True)
    provider.response = suggestion(needs_human=True)
    form = _sms_form()

    rejected = await client.post("/webhooks/twilio/sms", data=form, headers={"X-Twilio-Signature": "bogus"})
    assert rejected.status == 403

    url = str(client.make_url("/webhooks/twilio/sms"))
    signature = compute_signature("twilio-token", url, form)
    accepted = await client.post("/webhooks/twilio/sms", data=form, headers={"X-Twilio-Signature": signature})
    assert accepted.status == 200


@pytest.mark.asyncio
async def test_inbound_email(client, provider, seeded):
    provider.response = suggestion(needs_human=True, reply_channel="email")

    response = await client.post("/webhooks/mailchannels/inbound", json={
        "from": "Jane Doe <Jane@Example.com>",
        "to": [PROPERTY_EMAIL],
        "subject": "Late arrival",
        "text": "We will arrive around 11pm",
        "messageId": "<late-1@example.com>",
    })

    assert response.status == 200
    data = await response.json()
    assert data["status"] == "escalate"
    assert data["thread_id"] is not None


@pytest.mark.asyncio
async def test_reply_api_sends_and_resolves(client, async_session, sms, seeded):
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)

    response = await client.post(f"/api/threads/{thread.id}/reply", json={
        "channel": "sms", "body": "Early check-in is fine", "resolve": True, "user_id": 7,
    })

    assert response.status == 201
    data = await response.json()
    assert data["message"]["status"] == "sent"
    assert data["message"]["kind"] == "staff_reply"
    assert data["message"]["credits_deducted"] == 1
    assert data["thread"]["status"] == "closed"
    assert data["thread"]["assigned_user_id"] == 7
    assert [m.body for m in sms.sent] == ["Early check-in is fine"]


@pytest.mark.asyncio
async def test_reply_api_errors(client, async_session, seeded):
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)

    missing = await client.post("/api/threads/9999/reply", json={"channel": "sms", "body": "Hi"})
    assert missing.status == 404

    invalid = await client.post(f"/api/threads/{thread.id}/reply", json={"channel": "fax", "body": "Hi"})
    assert invalid.status == 400

    not_json = await client.post(f"/api/threads/{thread.id}/reply", data="nope")
    assert not_json.status == 400

    await ledger_service.credit(async_session, seeded.company_id, -100, CreditType.adjustment)
    broke = await client.post(f"/api/threads/{thread.id}/reply", json={"channel": "sms", "body": "Hi"})
    assert broke.status == 402
    assert (await broke.json())["type"] == "InsufficientCredit"


@pytest.mark.asyncio
async def test_suggest_and_close(client, async_session, provider, seeded):
    provider.response = suggestion(needs_human=True, intent="early_checkin")
    await client.post("/webhooks/twilio/sms", data=_sms_form())
    thread = await thread_service.get_thread_for_stay(async_session, seeded.stay_id)

    response = await client.get(f"/api/threads/{thread.id}/suggest")
    assert (await response.json())["suggestion"]["intent"] == "early_checkin"

    assert (await client.get("/api/threads/9999/suggest")).status == 404

    closed = await client.post(f"/api/threads/{thread.id}/close")
    assert (await closed.json())["thread"]["status"] == "closed"


@pytest.mark.asyncio
async def test_delivery_callbacks(client, async_session, dispatcher, seeded):
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)
    text = await dispatcher.send(async_session, thread.id, Channel.sms, GUEST_PHONE, "Hello")
    mail = await dispatcher.send(async_session, thread.id, Channel.email, GUEST_EMAIL, "Hello", subject="Hi")

    status = await client.post("/webhooks/twilio/sms/status", data={
        "MessageSid": text.provider_message_id, "MessageStatus": "delivered",
    })
    assert status.status == 204

    events = await client.post("/webhooks/mailchannels/events", json=[
        {"event": "delivered", "message_id": mail.provider_message_id},
        {"event": "opened", "message_id": mail.provider_message_id},
    ])
    assert await events.json() == {"received": 2, "applied": 1}

    delivered_sms = await thread_service.find_by_provider_id(async_session, text.provider_message_id)
    delivered_mail = await thread_service.find_by_provider_id(async_session, mail.provider_message_id)
    assert delivered_sms.status == MessageStatus.delivered.value
    assert delivered_mail.status == MessageStatus.delivered.value
