from html import escape
from typing import Optional

from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

# ========== UI Constants ==========
class UIEmojis:
    ALERT = "🚨"
    ROBOT = "🤖"
    GUEST = "👤"
    HOME = "🏠"
    CALENDAR = "📅"
    MESSAGE = "💬"
    CHART = "📊"
    IDEA = "💡"
    LINK = "🔗"
    CHECK = "✅"
    CANCEL = "❌"
    EDIT = "✏️"
    WARNING = "⚠️"


class UIMessages:
    """Formatted message templates"""

    DIVIDER_FULL = "━" * 30

    @staticmethod
    def header(title: str, emoji: str = "") -> str:
        """Create a formatted header"""
        if emoji:
            return f"{emoji} <b>{title}</b>\n{UIMessages.DIVIDER_FULL}\n"
        return f"<b>{title}</b>\n{UIMessages.DIVIDER_FULL}\n"

    @staticmethod
    def field(name: str, value: str, emoji: str = "") -> str:
        """Create a formatted field"""
        prefix = f"{emoji} " if emoji else "• "
        return f"{prefix}<b>{name}:</b> {value}\n"

    @staticmethod
    def quote(text: str, limit: int = 500) -> str:
        text = text or ""
        if len(text) > limit:
            text = text[:limit] + "…"
        return f"<i>{escape(text)}</i>\n"

    @staticmethod
    def success(text: str) -> str:
        return f"✅ {text}"

    @staticmethod
    def error(text: str) -> str:
        return f"❌ {text}"


class UIKeyboards:
    """Common keyboard layouts"""

    @staticmethod
    def escalation_actions(thread_id: int, admin_url: str = "") -> InlineKeyboardMarkup:
        """Send draft / Edit in admin / Ignore"""
        row = [InlineKeyboardButton(text=f"{UIEmojis.CHECK} Send", callback_data=f"send:{thread_id}")]
        if admin_url:
            row.append(InlineKeyboardButton(text=f"{UIEmojis.EDIT} Edit", url=f"{admin_url.rstrip('/')}/threads/{thread_id}"))
        row.append(InlineKeyboardButton(text=f"{UIEmojis.CANCEL} Ignore", callback_data=f"ignore:{thread_id}"))
        return InlineKeyboardMarkup(inline_keyboard=[row])


# === Helper Functions ===

def format_datetime(value, with_time: bool = True) -> str:
    if not value:
        return "—"
    return value.strftime("%d %b %Y %H:%M" if with_time else "%d %b %Y")


def format_escalation(
    guest_name: str,
    property_name: str,
    checkin: str,
    checkout: str,
    last_message: str,
    reason: str,
    intent: Optional[str] = None,
    confidence: Optional[float] = None,
    suggested_reply: Optional[str] = None,
    thread_id: Optional[int] = None,
    admin_url: str = "",
) -> str:
    text = UIMessages.header("Needs attention", UIEmojis.ALERT)
    text += UIMessages.field("Guest", escape(guest_name or "Unknown"), UIEmojis.GUEST)
    text += UIMessages.field("Property", escape(property_name or "—"), UIEmojis.HOME)
    text += UIMessages.field("Stay", f"{checkin} → {checkout}", UIEmojis.CALENDAR)
    text += UIMessages.field("Reason", escape(reason))
    if intent:
        conf = f" ({confidence:.0%})" if confidence is not None else ""
        text += UIMessages.field("Intent", f"{escape(intent)}{conf}", UIEmojis.CHART)
    text += f"\n{UIEmojis.MESSAGE} <b>Last message:</b>\n" + UIMessages.quote(last_message)
    if suggested_reply:
        text += f"\n{UIEmojis.IDEA} <b>Suggested reply:</b>\n" + UIMessages.quote(suggested_reply)
    if admin_url and thread_id is not None:
        text += f"\n{UIEmojis.LINK} {admin_url.rstrip('/')}/threads/{thread_id}"
    return text


def format_auto_reply(guest_name: str, property_name: str, reply: str, intent: Optional[str] = None) -> str:
    text = UIMessages.header("Auto-reply sent", UIEmojis.ROBOT)
    text += UIMessages.field("Guest", escape(guest_name or "Unknown"), UIEmojis.GUEST)
    text += UIMessages.field("Property", escape(property_name or "—"), UIEmojis.HOME)
    if intent:
        text += UIMessages.field("Intent", escape(intent), UIEmojis.CHART)
    text += "\n" + UIMessages.quote(reply)
    return text
