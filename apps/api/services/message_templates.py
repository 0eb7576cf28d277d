"""
Outbound message texts and inline keyboards.

Defaults live here; operators override any text through the bot_messages
table (see SettingsService.get_message). Keyboards use Telegram's
inline_keyboard reply markup shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from core.config import settings
from models import ContentItem
from services.plans import describe_duration, list_plans

ACCESS_EXPIRED_KEY = "access_expired"
SUBSCRIPTION_REMINDER_KEY = "subscription_reminder"
EVENING_REFLECTION_KEY = "evening_reflection"

DEFAULT_ACCESS_EXPIRED = (
    "You have woken up inside the dream. That is already strength.\n\n"
    "These seven days were not random. Something in you is changing.\n\n"
    "If you want to go deeper, the path is open. Unlock the full practice to continue."
)
DEFAULT_SUBSCRIPTION_REMINDER = (
    "Hi! Two days have passed. Ready to continue the path?\n\nChoose a plan:"
)
DEFAULT_EVENING_REFLECTION = "How did your day go, {name}?"


def _button(text: str, callback_data: Optional[str] = None, url: Optional[str] = None) -> Dict[str, str]:
    if url:
        return {"text": text, "url": url}
    return {"text": text, "callback_data": callback_data or ""}


def _keyboard(rows: List[List[Dict[str, str]]]) -> Dict[str, Any]:
    return {"inline_keyboard": rows}


def morning_keyboard() -> Dict[str, Any]:
    return _keyboard([
        [_button("Write to diary", "diary_add_auto")],
        [_button("Discuss the principle", "ai_discuss_principle")],
        [_button("Remind me later (2h)", "remind_later_2h")],
    ])


def evening_keyboard() -> Dict[str, Any]:
    return _keyboard([
        [_button("Write to diary", "diary_add_evening")],
        [_button("Discuss the day", "ai_discuss_day")],
        [_button("Skip the day", "skip_day")],
    ])


def subscription_keyboard() -> Dict[str, Any]:
    rows = [[_button(f"{describe_duration(p.days)} ({p.price_rub} RUB)", f"sub_plan_{p.id}")] for p in list_plans()]
    rows.append([_button("Support", "menu_support")])
    return _keyboard(rows)


def access_expired_keyboard() -> Dict[str, Any]:
    return _keyboard([
        [_button("Continue the path", "sub_activate")],
        [_button("Remind me later", "trial_remind_later")],
        [_button("No, thanks", "trial_no_thanks")],
    ])


def content_message(item: ContentItem, day: int, name: str) -> str:
    return (
        f"Good morning, {name}!\n\n"
        f"Day {day}. Principle: {item.title}\n\n"
        f"Declaration:\n\n{item.declaration}\n\n"
        f"Explanation:\n{item.description}\n\n"
        f"Observe today:\n\n{item.task}"
    )


def evening_message(template: str, name: str) -> str:
    return template.replace("{name}", name)


def payment_confirmation(paid_until: datetime, channel: str) -> str:
    return (
        f"<b>Payment via {channel} received!</b>\n\n"
        f"Your subscription is active until {paid_until.strftime('%d.%m.%Y')}.\n"
        f"Thank you for staying with us!"
    )


def gift_link(token: str) -> Dict[str, Optional[str]]:
    """Deep link carrying the redemption token, or the manual /start command when no bot username is configured."""
    start_cmd = f"/start gift_{token}"
    username = (settings.BOT_USERNAME or "").lstrip("@")
    link = f"https://t.me/{username}?start=gift_{token}" if username else None
    return {"link": link, "start_command": start_cmd}


def gift_paid_message(token: str, days: int) -> Dict[str, Any]:
    artifact = gift_link(token)
    link = artifact["link"]
    if link:
        body = f"<b>Link for your friend:</b>\n<a href=\"{link}\">{link}</a>\n\n"
        markup = _keyboard([[_button(
            "Share",
            url=f"https://t.me/share/url?url={quote(link, safe='')}&text={quote('A subscription gift for you!', safe='')}",
        )]])
    else:
        body = f"<b>Command for your friend:</b>\n<code>{artifact['start_command']}</code>\n\n"
        markup = None
    text = (
        f"<b>Gift paid!</b>\n\n"
        f"A subscription for <b>{describe_duration(days)}</b> is ready to send.\n\n"
        f"{body}"
        f"Forward this message to your friend or copy the link."
    )
    return {"text": text, "reply_markup": markup, **artifact}


def gift_redeemed_message(days: int, paid_until: datetime) -> str:
    return (
        f"<b>Gift activated!</b>\n\n"
        f"You received {describe_duration(days)} of access, active until {paid_until.strftime('%d.%m.%Y')}."
    )
