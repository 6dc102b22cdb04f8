"""Clean-up applied to worker text before it is posted to a chat.

The chain runs in a fixed order and is repeated until the text stops
changing, so running :func:`sanitize` on its own output changes nothing.
"""

import re
from typing import Callable, Sequence, Tuple

NO_CONTENT_MESSAGE = "No messages to summarise in that time window."

Transform = Callable[[str], str]

_PAYMENT_LINE_PATTERNS = [
    re.compile(r"payment required", re.IGNORECASE),
    re.compile(r"\bpay\s+(?:\$|&)", re.IGNORECASE),
    re.compile(r"\bvia x402\b", re.IGNORECASE),
    re.compile(r"after payment,? your", re.IGNORECASE),
    re.compile(r"[?&](?:telegram_callback|token)=", re.IGNORECASE),
]

_TIMESTAMP_PATTERNS = [
    # 2024-05-01T12:30:00Z, [2024-05-01 12:30], (2024-05-01 12:30:15+01:00)
    re.compile(
        r"[\[(]?\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?\b[\])]?"
    ),
    # [12:30], [12:30:15 PM]
    re.compile(r"\[\d{1,2}:\d{2}(?::\d{2})?(?:\s?[AaPp][Mm])?\]"),
]

_GREETING = re.compile(
    r"^(?:hi|hello|hey|hiya|howdy|gm|greetings|good (?:morning|afternoon|evening))\b[\s\w,!.'-]{0,60}$",
    re.IGNORECASE,
)


def strip_payment_prompts(text: str) -> str:
    lines = text.splitlines()
    kept = [line for line in lines if not any(p.search(line) for p in _PAYMENT_LINE_PATTERNS)]
    return "\n".join(kept)


def strip_timestamps(text: str) -> str:
    for pattern in _TIMESTAMP_PATTERNS:
        # nested brackets can leave a fresh timestamp behind
        count = 1
        while count:
            text, count = pattern.subn("", text)
    return "\n".join(re.sub(r"[ \t]{2,}", " ", line).strip() for line in text.splitlines())


def dedupe_greetings(text: str) -> str:
    seen = set()
    kept = []
    for line in text.splitlines():
        stripped = line.strip()
        if _GREETING.match(stripped):
            key = re.sub(r"\W+", " ", stripped.lower()).strip()
            if key in seen:
                continue
            seen.add(key)
        kept.append(line)
    return "\n".join(kept)


def collapse_blank_lines(text: str) -> str:
    text = "\n".join(line.rstrip() for line in text.splitlines())
    return re.sub(r"\n{3,}", "\n\n", text).strip()


PIPELINE: Tuple[Transform, ...] = (
    strip_timestamps,
    strip_payment_prompts,
    dedupe_greetings,
    collapse_blank_lines,
)


def sanitize(text: str, pipeline: Sequence[Transform] = PIPELINE, *, empty: str = NO_CONTENT_MESSAGE) -> str:
    previous = None
    while text != previous:
        previous = text
        for transform in pipeline:
            text = transform(text)
    return text if text.strip() else empty
