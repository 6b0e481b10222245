"""Conversation language detection.

Priority chain, first success wins:

1. A language code declared in the request metadata.
2. Unicode script ranges in the most recent user message.
3. Keyword and diacritic heuristics for Latin-script languages.
4. A classification call to a general-purpose model, bounded by a timeout.

Anything that fails along the way degrades to ``und`` (undetermined).
"""

import asyncio
import re
from typing import Any, List, Optional, Pattern, Sequence, Tuple

from edge_relay.backends import BackendError
from edge_relay.models import ChatMessage, RequestMeta
from edge_relay.sanitizer import (
    LANGUAGE_SENTINELS,
    UNDETERMINED,
    last_user_text,
    normalize_iso2,
    sanitize_content,
)
from edge_relay.shapes import first_present
from edge_relay.telemetry import logger

# (first code point, last code point, language), checked in order.
_SCRIPT_RANGES: Sequence[Tuple[int, int, str]] = (
    (0x3040, 0x30FF, "ja"),  # Hiragana, Katakana
    (0xAC00, 0xD7AF, "ko"),  # Hangul syllables
    (0x4E00, 0x9FFF, "zh"),  # CJK unified ideographs
    (0x0400, 0x04FF, "ru"),  # Cyrillic
    (0x0600, 0x06FF, "ar"),
    (0x0590, 0x05FF, "he"),
    (0x0370, 0x03FF, "el"),
    (0x0900, 0x097F, "hi"),  # Devanagari
    (0x0E00, 0x0E7F, "th"),
)

# (language, diacritic pattern or None, keywords), checked in order.
_LATIN_RULES: Sequence[Tuple[str, Optional[Pattern[str]], Sequence[str]]] = (
    (
        "es",
        re.compile(r"[ñáéíóúü¿¡]"),
        ("hola", "gracias", "por favor", "buenos", "buenas", "necesito",
         "ayuda", "quiero", "donde", "qué", "cuánto", "porque"),
    ),
    (
        "pt",
        re.compile(r"[ãõç]"),
        ("olá", "ola", "obrigado", "obrigada", "por favor", "você", "vocês",
         "não", "nao", "tudo bem"),
    ),
    (
        "fr",
        re.compile(r"[àâçéèêëîïôûùüÿœ]"),
        ("bonjour", "salut", "merci", "s'il", "s’il", "vous", "au revoir",
         "ça va", "comment", "aujourd"),
    ),
    (
        "de",
        re.compile(r"[äöüß]"),
        ("hallo", "danke", "bitte", "und", "ich", "nicht", "wie geht", "heute"),
    ),
    (
        "it",
        re.compile(r"[ìò]"),
        ("ciao", "grazie", "per favore", "come va", "oggi", "buongiorno", "buonasera"),
    ),
    (
        "id",
        None,
        ("halo", "terima kasih", "tolong", "selamat", "bagaimana", "hari ini"),
    ),
)

CLASSIFIER_INSTRUCTION = (
    "Return ONLY the ISO 639-1 language code (two letters). "
    "If unsure, return 'und'. No extra text."
)

_CODE_RE = re.compile(r"\b([a-z]{2}|und)\b")

_REPLY_PATHS = (("response",), ("result", "response"), ("text",))


def detect_by_script(text: str) -> str:
    """Return the language of the first matching script range, or ``""``."""
    for low, high, language in _SCRIPT_RANGES:
        if any(low <= ord(ch) <= high for ch in text):
            return language
    return ""


def detect_by_keywords(text: str) -> str:
    """Return the first Latin-script language whose diacritics or keywords match."""
    lowered = text.lower()
    for language, diacritics, keywords in _LATIN_RULES:
        if diacritics is not None and diacritics.search(lowered):
            return language
        hits = sum(1 for word in keywords if word in lowered)
        if hits >= 2:
            return language
    return ""


def detect_heuristic(text: str) -> str:
    """Script ranges first, then Latin-script keywords; ``""`` if neither matches."""
    if not text:
        return ""
    return detect_by_script(text) or detect_by_keywords(text)


def parse_classifier_reply(reply: Any) -> str:
    """Pull the first two-letter code (or ``und``) out of a classifier reply."""
    raw = first_present(reply, _REPLY_PATHS, str)
    if raw is None:
        raw = reply if isinstance(reply, str) else ""
    match = _CODE_RE.search(raw.strip().lower())
    return match.group(1) if match else UNDETERMINED


async def detect_via_model(
    classifier: Any,
    model: str,
    text: str,
    timeout: float,
) -> str:
    """Ask a general-purpose model for the language code of ``text``.

    The call is abandoned after ``timeout`` seconds. Any failure, including
    the timeout, yields ``und``.
    """
    sample = sanitize_content(text)[:240]
    if len(sample) < 8:
        return UNDETERMINED

    payload = {
        "stream": False,
        "max_tokens": 6,
        "messages": [
            {"role": "system", "content": CLASSIFIER_INSTRUCTION},
            {"role": "user", "content": "Text:\n{}".format(sample)},
        ],
    }
    try:
        reply = await asyncio.wait_for(classifier.run(model, payload), timeout)
    except asyncio.TimeoutError:
        logger.warning("Language classifier timed out after %.1fs", timeout)
        return UNDETERMINED
    except BackendError as exc:
        logger.warning("Language classifier failed: %s", exc.detail)
        return UNDETERMINED
    except Exception as exc:
        logger.warning("Language classifier reply unusable: %s", type(exc).__name__)
        return UNDETERMINED
    return parse_classifier_reply(reply)


async def detect_language(
    messages: List[ChatMessage],
    meta: RequestMeta,
    classifier: Any = None,
    model: str = "",
    timeout: float = 4.0,
) -> str:
    """Determine the two-letter language code for a conversation.

    Args:
        messages: The sanitized conversation.
        meta: The sanitized request metadata.
        classifier: A ``ModelClient``-like object for the fallback call; when
            None the fallback step is skipped.
        model: Model identifier for the fallback classifier.
        timeout: Upper bound in seconds on the fallback call.

    Returns:
        A two-letter code, or ``und`` if undetermined.
    """
    declared = (meta.lang_iso2 or "").strip().lower()
    if declared and declared not in LANGUAGE_SENTINELS:
        code = normalize_iso2(declared)
        if code:
            return code

    text = last_user_text(messages)
    guess = detect_heuristic(text)
    if guess:
        return guess

    if classifier is None or not model:
        return UNDETERMINED
    return await detect_via_model(classifier, model, text, timeout)
