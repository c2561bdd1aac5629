import pytest

from comms.errors import SuggestionUnavailable
from comms.services import suggestion_service, thread_service
from comms.services.suggestion_service import parse_suggestion, fetch_suggestion

from conftest import suggestion


def test_parse_normalizes_and_ignores_extra_fields():
    parsed = parse_suggestion(suggestion(intent="  WiFi ", model="gpt-x"))
    assert parsed.intent == "wifi"
    assert parsed.reply_channel == "sms"


@pytest.mark.parametrize("raw", [
    None,
    "auto reply please",
    ["not", "an", "object"],
    suggestion(confidence=1.5),
    suggestion(reply_channel="whatsapp"),
    {"intent": "wifi", "reply_channel": "sms"},
])
def test_parse_rejects_unusable_payloads(raw):
    with pytest.raises(SuggestionUnavailable):
        parse_suggestion(raw)


@pytest.mark.asyncio
async def test_fetch_wraps_provider_errors(provider):
    provider.error = ConnectionError("reset by peer")
    with pytest.raises(SuggestionUnavailable) as exc:
        await fetch_suggestion(provider, {"messages": []})
    assert "fake" in str(exc.value)

    with pytest.raises(SuggestionUnavailable):
        await fetch_suggestion(None, {"messages": []})


@pytest.mark.asyncio
async def test_latest_draft_is_returned(async_session, seeded):
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)
    assert await suggestion_service.get_suggestion(async_session, thread.id) is None

    await suggestion_service.save_draft(async_session, thread.id, parse_suggestion(suggestion(intent="parking")))
    await suggestion_service.save_draft(async_session, thread.id, parse_suggestion(suggestion(intent="checkout")))

    latest = await suggestion_service.get_suggestion(async_session, thread.id)
    assert latest.intent == "checkout"
