from typing import Any, Dict, List, Optional

from .payment import SEARCH_EVENTS, SUMMARISE
from .sanitize import sanitize
from .worker import WorkerResult

_BOLD = {"discord": "**", "telegram": "*"}

NO_EVENTS_MESSAGE = "No events found. Please try a different search query."
SEEN_ALL_MESSAGE = "✅ You've seen all events from your last search. Try a new search!"
NO_SEARCH_MESSAGE = (
    "❌ No recent search found. Please use /search_events first.\n\n"
    "Example: /search_events on crypto in Dubai"
)
PAYMENT_RECEIVED_MESSAGE = "✅ Payment received. Your result is on its way."

SUMMARISE_USAGE = "Usage: /summarise 60"
SEARCH_USAGE = (
    "Examples:\n"
    "• /search_events on crypto\n"
    "• /search_events on AI in London\n"
    "• /search_events on crypto in San Francisco"
)

HELP_TEXT = (
    "Hey! I summarise chats and find events, paid per request via x402.\n\n"
    "• /summarise <minutes> - Summarise the recent conversation (default 60)\n"
    "• /search_events on <topic> - Search events by topic (e.g., crypto, AI)\n"
    "• /search_events on <topic> in <place> - Search events by topic in a city\n\n"
    "Examples:\n"
    "• /summarise 120\n"
    "• /search_events on crypto\n"
    "• /search_events on AI in London\n\n"
    "You will be provided with up to 5 events per search.\n\n"
    "• /more - receive 5 more"
)


def bold(text: str, platform: str) -> str:
    marker = _BOLD.get(platform, "**")
    return f"{marker}{text}{marker}"


def error_message(text: str) -> str:
    return f"❌ Error: {text}"


def describe_request(entrypoint: str, parameters: Dict[str, Any], platform: str) -> str:
    if entrypoint == SUMMARISE:
        where = "channel" if platform == "discord" else "chat"
        return f"We'll summarise the last {parameters.get('lookbackMinutes')} minutes of this {where}."
    if entrypoint == SEARCH_EVENTS:
        topic = bold(str(parameters.get("topic")), platform)
        location = parameters.get("location")
        if location:
            return f"Searching for {topic} events in {bold(str(location), platform)}"
        return f"Searching for {topic} events"
    return entrypoint


def payment_prompt(
    entrypoint: str,
    parameters: Dict[str, Any],
    *,
    platform: str,
    price: str,
    pay_url: str,
) -> str:
    lines = [
        f"🪙 {bold('Payment Required', platform)}",
        "",
        describe_request(entrypoint, parameters, platform),
        "",
        f"Pay {bold(price, platform)} via x402:",
        pay_url,
        "",
        "After payment, your result will appear here automatically.",
    ]
    return "\n".join(lines)


def format_summary(result: WorkerResult, platform: str) -> str:
    summary = sanitize(result.summary_text or "")
    text = f"{bold('Summary', platform)}\n{summary}\n\n"
    items = [sanitize(item, empty="") for item in result.actionables]
    items = [item for item in items if item]
    if items:
        numbered = "\n".join(f"{idx}. {item}" for idx, item in enumerate(items, start=1))
        text += f"{bold('Action Items', platform)}\n{numbered}"
    else:
        text += "_No action items identified._"
    return text


def _event_line(number: int, event: Dict[str, Any]) -> str:
    title = str(event.get("title") or event.get("name") or "Untitled Event").replace("[", "(").replace("]", ")")
    url = event.get("url")
    line = f"{number}. [{title}]({url})" if url else f"{number}. {title}"
    if event.get("location"):
        line += f" - {event['location']}"
    elif event.get("description"):
        desc = str(event["description"])
        if len(desc) > 50:
            desc = desc[:47] + "..."
        line += f" - {desc}"
    return line


def format_events(
    events: List[Dict[str, Any]],
    *,
    total: Optional[int] = None,
    offset: int = 0,
) -> str:
    if not events:
        return NO_EVENTS_MESSAGE
    total = len(events) if total is None else total
    lines = [_event_line(offset + idx, event) for idx, event in enumerate(events, start=1)]
    plural = "s" if total != 1 else ""
    header = f"Found {total} event{plural}"
    if total > len(events):
        header += f" (showing {offset + 1}-{offset + len(events)})"
    text = f"{header}:\n\n" + "\n".join(lines)
    if offset + len(events) < total:
        text += "\n\nSend /more for more events."
    return text
