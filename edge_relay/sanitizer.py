"""Payload sanitization for the edge relay.

Caller text is cleaned before it reaches any model call:

1. Control characters other than tab/LF/CR are dropped.
2. Script/style bodies, high-risk elements, dangerous URL schemes and
   inline event handlers are removed.
3. The result is truncated to the per-message bound.
4. Step 1 is re-applied and whitespace trimmed.

Separately, ``looks_malicious`` is authoritative for whether a message is
forwarded at all: a positive match replaces the whole message with a
redaction marker.
"""

import re
from typing import Any, Dict, List

from edge_relay.models import ChatMessage, RequestMeta

MAX_MESSAGES = 30
MAX_MESSAGE_CHARS = 1_000

REDACTION_MARKER = "[REDACTED: blocked suspicious content]"

UNDETERMINED = "und"
LANGUAGE_SENTINELS = ("auto", UNDETERMINED, "unknown")

_ROLES = ("user", "assistant")

# Precompiled, applied in order.
_MARKUP_PATTERNS = (
    re.compile(r"<\s*(script|style)\b[^>]*>[\s\S]*?<\s*/\s*\1\s*>", re.IGNORECASE),
    # Unpaired or unterminated script/style tags.
    re.compile(r"<\s*/?\s*(script|style)[^>]*>?", re.IGNORECASE),
    re.compile(r"<\s*(iframe|object|embed|link|meta|base|form)\b[^>]*>", re.IGNORECASE),
    re.compile(r"<\s*/\s*(iframe|object|embed|link|meta|base|form)\s*>", re.IGNORECASE),
    re.compile(r"\bjavascript\s*:", re.IGNORECASE),
    re.compile(r"\bvbscript\s*:", re.IGNORECASE),
    re.compile(r"\bdata\s*:\s*text/html\b", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=\s*[\"'][\s\S]*?[\"']", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=\s*[^\s>]+", re.IGNORECASE),
)

_MALICIOUS_NEEDLES = (
    "<script",
    "document.cookie",
    "localstorage.",
    "sessionstorage.",
    "onerror=",
    "onload=",
    "eval(",
    "new function",
    "javascript:",
    "vbscript:",
    "data:text/html",
    "base64,",
)


def safe_text_only(value: Any) -> str:
    """Keep tab, LF, CR, printable ASCII and code points >= 160; trim."""
    text = value if isinstance(value, str) else str(value or "")
    kept = [
        ch
        for ch in text
        if ch in "\t\n\r" or 32 <= ord(ch) <= 126 or ord(ch) >= 160
    ]
    return "".join(kept).strip()


def _strip_once(text: str) -> str:
    for pattern in _MARKUP_PATTERNS:
        text = pattern.sub("", text)
    return text


def strip_dangerous_markup(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> str:
    """Remove dangerous markup and truncate to ``max_chars``.

    Removal repeats until nothing changes, so markup reassembled by an
    earlier removal (``<scr<script></script>ipt>``) is removed as well.
    """
    text = text.replace("\x00", "")
    text = re.sub(r"\r\n?", "\n", text)

    previous = None
    while text != previous:
        previous = text
        text = _strip_once(text)[:max_chars]
    return text.strip()


def sanitize_content(text: Any, max_chars: int = MAX_MESSAGE_CHARS) -> str:
    """Run the full sanitization pipeline on one string field."""
    cleaned = strip_dangerous_markup(safe_text_only(text), max_chars)
    return safe_text_only(cleaned)


def looks_malicious(text: str) -> bool:
    """Return True if the text contains any high-risk substring."""
    lowered = (text or "").lower()
    return any(needle in lowered for needle in _MALICIOUS_NEEDLES)


def normalize_messages(
    raw: Any,
    max_messages: int = MAX_MESSAGES,
    max_chars: int = MAX_MESSAGE_CHARS,
) -> List[ChatMessage]:
    """Project caller messages onto a bounded, sanitized conversation.

    Only the most recent ``max_messages`` entries are considered, in the
    order they were sent. Entries with another role or no content left after
    sanitization are dropped; entries that look malicious are replaced
    with the redaction marker.

    Args:
        raw: The caller-supplied ``messages`` value (any JSON type).
        max_messages: Conversation bound.
        max_chars: Per-message character bound.

    Returns:
        The sanitized conversation (possibly empty).
    """
    if not isinstance(raw, list):
        return []

    out: List[ChatMessage] = []
    for item in raw[-max_messages:]:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "").lower()
        if role not in _ROLES:
            continue

        content = item.get("content")
        content = sanitize_content(content if isinstance(content, str) else "", max_chars)
        if not content:
            continue

        if looks_malicious(content):
            out.append(ChatMessage(role=role, content=REDACTION_MARKER))
            continue
        out.append(ChatMessage(role=role, content=content))
    return out


def last_user_text(messages: List[ChatMessage]) -> str:
    """Return the content of the most recent user message, or ``""``."""
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


def normalize_iso2(code: Any) -> str:
    """Reduce a language tag to its lower-case two-letter primary subtag.

    The sentinels ``auto``, ``und`` and ``unknown`` normalize to ``""``.
    """
    text = safe_text_only(code if isinstance(code, str) else "").lower()
    if not text or text in LANGUAGE_SENTINELS:
        return ""
    primary = re.split(r"[-_]", text, maxsplit=1)[0]
    return primary[:2]


def sanitize_meta(raw: Any) -> RequestMeta:
    """Project caller metadata onto the allow-listed advisory fields.

    Every field is sanitized independently; unknown fields are dropped.
    """
    meta: Dict[str, Any] = raw if isinstance(raw, dict) else {}
    fields: Dict[str, Any] = {}

    lang = normalize_iso2(meta.get("lang_iso2"))
    if lang:
        fields["lang_iso2"] = lang

    for key in ("tone", "model"):
        value = meta.get(key)
        if isinstance(value, str):
            cleaned = sanitize_content(value, 64)
            if cleaned and not looks_malicious(cleaned):
                fields[key] = cleaned

    translate_to = normalize_iso2(meta.get("translate_to"))
    if translate_to:
        fields["translate_to"] = translate_to

    if isinstance(meta.get("want_embeddings"), bool):
        fields["want_embeddings"] = meta["want_embeddings"]

    return RequestMeta(**fields)
