"""
Suggestion retrieval.

The language-model call is an opaque external function. Whatever it returns
is validated at the boundary; anything unusable becomes
SuggestionUnavailable, never a crash.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Mapping, Any, List, Dict

import aiohttp
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import SuggestionDraft, Message
from comms.errors import SuggestionUnavailable
from comms.schemas.validation import Suggestion


class SuggestionProvider(ABC):
    """Produces a raw suggestion for a conversation"""

    @abstractmethod
    async def suggest(self, request: Dict[str, Any]) -> Mapping[str, Any]:
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        pass


class HttpSuggestionProvider(SuggestionProvider):
    """POSTs the conversation to an external endpoint that returns suggestion JSON"""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 20):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "http"

    async def suggest(self, request: Dict[str, Any]) -> Mapping[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.url, json=request, headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise SuggestionUnavailable(f"Suggestion endpoint returned {response.status}")
                data = await response.json(content_type=None)
        # Some endpoints wrap the object
        if isinstance(data, dict) and isinstance(data.get("suggestion"), dict):
            data = data["suggestion"]
        return data


def parse_suggestion(raw: Any) -> Suggestion:
    if not isinstance(raw, Mapping):
        raise SuggestionUnavailable(f"Suggestion must be an object, got {type(raw).__name__}")
    try:
        return Suggestion.model_validate(dict(raw))
    except ValidationError as e:
        raise SuggestionUnavailable(f"Invalid suggestion: {e.error_count()} error(s)") from e


def build_request(history: List[Message], guest_name: str, property_name: str, channel: str) -> Dict[str, Any]:
    return {
        "guest_name": guest_name,
        "property_name": property_name,
        "channel": channel,
        "messages": [
            {
                "direction": m.direction,
                "channel": m.channel,
                "body": m.body_text,
                "at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in history
        ],
    }


async def fetch_suggestion(provider: Optional[SuggestionProvider], request: Dict[str, Any]) -> Suggestion:
    """Raises SuggestionUnavailable on any provider or validation failure"""
    if provider is None:
        raise SuggestionUnavailable("No suggestion provider configured")
    try:
        raw = await provider.suggest(request)
    except SuggestionUnavailable:
        raise
    except Exception as e:
        raise SuggestionUnavailable(f"Suggestion provider {provider.name} failed: {e}") from e
    return parse_suggestion(raw)


async def save_draft(session: AsyncSession, thread_id: int, suggestion: Suggestion, message_id: Optional[int] = None) -> SuggestionDraft:
    draft = SuggestionDraft(thread_id=thread_id, message_id=message_id, payload=suggestion.model_dump())
    session.add(draft)
    await session.commit()
    return draft


async def get_suggestion(session: AsyncSession, thread_id: int) -> Optional[Suggestion]:
    """Latest stored suggestion for a thread, or None"""
    stmt = (
        select(SuggestionDraft)
        .where(SuggestionDraft.thread_id == thread_id)
        .order_by(SuggestionDraft.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    draft = result.scalar_one_or_none()
    if draft is None:
        return None
    try:
        return parse_suggestion(draft.payload)
    except SuggestionUnavailable as e:
        logging.warning(f"Stored draft {draft.id} for thread {thread_id} is unusable: {e}")
        return None
