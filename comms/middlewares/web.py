"""aiohttp middlewares for webhooks and the reply API."""
import json
import logging

from aiohttp import web
from pydantic import ValidationError

from comms.errors import (
    NotFound, InvalidStateTransition, LedgerError, MissingVariable,
    TransportPermanent, TransportTransient, SuggestionUnavailable
)

ERROR_STATUS = (
    (NotFound, 404),
    (InvalidStateTransition, 409),
    (LedgerError, 402),
    (TransportPermanent, 502),
    (TransportTransient, 503),
    (SuggestionUnavailable, 503),
    (MissingVariable, 400),
    (ValidationError, 400),
    (json.JSONDecodeError, 400),
    (ValueError, 400),
)


def _error_response(status: int, error: Exception) -> web.Response:
    return web.json_response({"error": str(error), "type": type(error).__name__}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        for error_type, status in ERROR_STATUS:
            if isinstance(e, error_type):
                if status >= 500:
                    logging.error(f"{request.method} {request.path} -> {status}: {e}")
                else:
                    logging.warning(f"{request.method} {request.path} -> {status}: {e}")
                return _error_response(status, e)

        logging.exception(f"Unhandled exception in {request.method} {request.path}: {e}")
        return web.json_response({"error": "Internal server error"}, status=500)


def session_middleware(session_factory):
    """One AsyncSession per request at request["session"]"""

    @web.middleware
    async def middleware(request: web.Request, handler):
        async with session_factory() as session:
            request["session"] = session
            try:
                return await handler(request)
            except Exception:
                await session.rollback()
                raise

    return middleware
