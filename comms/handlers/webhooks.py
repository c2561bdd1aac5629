"""
Provider webhooks: inbound SMS/email and delivery status callbacks.
"""
import logging

from aiohttp import web
from sqlalchemy import text

from comms.config import config
from comms.database.models import Channel
from comms.runtime import RUNTIME_KEY
from comms.services import inbox_service

routes = web.RouteTableDef()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _twiml() -> web.Response:
    return web.Response(text=EMPTY_TWIML, content_type="text/xml")


def _public_url(request: web.Request) -> str:
    # Twilio signs the URL it called, which behind a proxy is not request.url
    proto = request.headers.get("X-Forwarded-Proto", request.scheme)
    host = request.headers.get("X-Forwarded-Host", request.host)
    return f"{proto}://{host}{request.path_qs}"


def _check_twilio_signature(request: web.Request, params: dict):
    if not config.TWILIO_VALIDATE_SIGNATURE:
        return
    runtime = request.app[RUNTIME_KEY]
    signature = request.headers.get("X-Twilio-Signature")
    if runtime.twilio is None or not runtime.twilio.validate_signature(_public_url(request), params, signature):
        logging.warning(f"Rejected Twilio webhook with invalid signature on {request.path}")
        raise web.HTTPForbidden(text="Invalid signature")


# ========== Twilio ==========

@routes.post("/webhooks/twilio/sms")
async def twilio_inbound(request: web.Request):
    runtime = request.app[RUNTIME_KEY]
    params = dict(await request.post())
    _check_twilio_signature(request, params)

    inbound = runtime.dispatcher.receive(Channel.sms, params)
    outcome = await inbox_service.handle_inbound(request["session"], runtime, inbound)
    logging.info(f"Inbound SMS {inbound.provider_message_id}: {outcome.status} (thread {outcome.thread_id})")

    # Replies go out through the API, never as TwiML
    return _twiml()


@routes.post("/webhooks/twilio/sms/status")
async def twilio_status(request: web.Request):
    runtime = request.app[RUNTIME_KEY]
    params = dict(await request.post())
    _check_twilio_signature(request, params)

    await runtime.dispatcher.apply_status_callback(request["session"], Channel.sms, params)
    return web.Response(status=204)


# ========== MailChannels ==========

@routes.post("/webhooks/mailchannels/inbound")
async def mailchannels_inbound(request: web.Request):
    runtime = request.app[RUNTIME_KEY]
    payload = await request.json()

    inbound = runtime.dispatcher.receive(Channel.email, payload)
    outcome = await inbox_service.handle_inbound(request["session"], runtime, inbound)
    logging.info(f"Inbound email from {inbound.from_addr}: {outcome.status} (thread {outcome.thread_id})")

    return web.json_response({"status": outcome.status, "thread_id": outcome.thread_id})


@routes.post("/webhooks/mailchannels/events")
async def mailchannels_events(request: web.Request):
    runtime = request.app[RUNTIME_KEY]
    payload = await request.json()
    events = payload if isinstance(payload, list) else [payload]

    applied = 0
    for event in events:
        try:
            message = await runtime.dispatcher.apply_status_callback(request["session"], Channel.email, event)
        except ValueError as e:
            # Opens, clicks and other events we do not track
            logging.info(f"Ignoring MailChannels event: {e}")
            continue
        if message is not None:
            applied += 1

    return web.json_response({"received": len(events), "applied": applied})


# ========== Health ==========

@routes.get("/healthz")
async def healthz(request: web.Request):
    await request["session"].execute(text("SELECT 1"))
    return web.json_response({"status": "ok"})
