"""
Operator API: thread timeline, manual replies, suggestions.
"""
from aiohttp import web

from comms.database.models import Message, Thread
from comms.runtime import RUNTIME_KEY
from comms.schemas.validation import ManualReply
from comms.services import inbox_service, suggestion_service, thread_service
from comms.utils.timeutil import utc

routes = web.RouteTableDef()


def _iso(value):
    return utc(value).isoformat() if value else None


def thread_json(thread: Thread) -> dict:
    return {
        "id": thread.id,
        "stay_id": thread.stay_id,
        "status": thread.status,
        "last_channel": thread.last_channel,
        "last_message_at": _iso(thread.last_message_at),
        "assigned_user_id": thread.assigned_user_id,
        "closed_at": _iso(thread.closed_at),
    }


def message_json(message: Message) -> dict:
    return {
        "id": message.id,
        "sequence": message.sequence,
        "direction": message.direction,
        "channel": message.channel,
        "kind": message.kind,
        "from": message.from_addr,
        "to": message.to_addr,
        "subject": message.subject,
        "body": message.body_text,
        "status": message.status,
        "error": message.error_message,
        "provider_message_id": message.provider_message_id,
        "credits_deducted": message.credits_deducted,
        "created_at": _iso(message.created_at),
        "sent_at": _iso(message.sent_at),
    }


def _thread_id(request: web.Request) -> int:
    return int(request.match_info["thread_id"])


@routes.get(r"/api/threads/{thread_id:\d+}")
async def get_thread(request: web.Request):
    timeline = await thread_service.get_timeline(request["session"], _thread_id(request))
    return web.json_response({
        "thread": thread_json(timeline.thread),
        "messages": [message_json(m) for m in timeline.messages],
    })


@routes.post(r"/api/threads/{thread_id:\d+}/reply")
async def reply(request: web.Request):
    runtime = request.app[RUNTIME_KEY]
    session = request["session"]
    thread_id = _thread_id(request)
    data = ManualReply.model_validate(await request.json())

    message = await inbox_service.send_staff_reply(
        session, runtime, thread_id, data.channel, data.body,
        subject=data.subject, resolve=data.resolve, user_id=data.user_id
    )
    thread = await thread_service.get_thread(session, thread_id)
    return web.json_response({"message": message_json(message), "thread": thread_json(thread)}, status=201)


@routes.get(r"/api/threads/{thread_id:\d+}/suggest")
async def suggest(request: web.Request):
    session = request["session"]
    thread_id = _thread_id(request)
    await thread_service.get_thread(session, thread_id)

    suggestion = await suggestion_service.get_suggestion(session, thread_id)
    return web.json_response({"suggestion": suggestion.model_dump() if suggestion else None})


@routes.post(r"/api/threads/{thread_id:\d+}/close")
async def close(request: web.Request):
    thread = await thread_service.close_thread(request["session"], _thread_id(request))
    return web.json_response({"thread": thread_json(thread)})
