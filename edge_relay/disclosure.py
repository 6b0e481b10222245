"""Model non-disclosure and author attribution policy.

Callers are never told which models sit behind the relay. Questions about
the model get a fixed reply instead of a backend call, and configured
model identifiers are scrubbed from outgoing text. When an author name is
configured it is removed from outgoing text unless the caller asked who
made the assistant.
"""

import re
from typing import Callable, Iterable, Optional

WITHHELD = "[model withheld]"

WITHHELD_REPLY = (
    "I can't disclose the specific model identifiers or configuration.\n"
    "This assistant uses AI systems from multiple providers, "
    "but exact model IDs are intentionally withheld."
)

_MODEL_QUESTIONS = (
    "what model",
    "which model",
    "model are you",
    "model do you use",
    "what llm",
    "which llm",
    "what ai model",
    "which ai model",
    "what models are used",
    "tell me the model",
)

_AUTHOR_QUESTIONS = (
    "who created you",
    "who made you",
    "who built you",
    "who is your author",
    "who is the author",
    "who is your creator",
    "creator",
    "author",
    "desarrollador",
    "creador",
    "quién te creó",
    "quien te creo",
    "quién te hizo",
    "hecho por",
    "creado por",
)


def wants_model_disclosure(text: str, model_ids: Iterable[str] = ()) -> bool:
    """Return True if the text asks about, or names, an internal model."""
    lowered = (text or "").lower()
    if any(question in lowered for question in _MODEL_QUESTIONS):
        return True
    return any(model_id and model_id.lower() in lowered for model_id in model_ids)


def model_id_redactor(model_ids: Iterable[str]) -> Callable[[str], str]:
    """Build a function replacing any of ``model_ids`` with ``[model withheld]``."""
    ids = sorted({m for m in model_ids if m}, key=len, reverse=True)
    if not ids:
        return lambda text: text
    pattern = re.compile("|".join(re.escape(m) for m in ids), re.IGNORECASE)

    def redact(text: str) -> str:
        return pattern.sub(WITHHELD, text)

    return redact


def withheld_reply(author_name: str = "") -> str:
    """The fixed model-question reply, naming the author when one is configured."""
    if not author_name:
        return WITHHELD_REPLY
    head, rest = WITHHELD_REPLY.split("\n", 1)
    return "{}\nThis assistant was created by {}.\n{}".format(head, author_name, rest)


def wants_author_disclosure(text: str) -> bool:
    """Return True if the text asks who made the assistant."""
    lowered = (text or "").lower()
    return any(question in lowered for question in _AUTHOR_QUESTIONS)


def author_stripper(author_name: str) -> Callable[[str], str]:
    """Build a function removing ``author_name`` from text.

    Text that does not mention the name is returned unchanged; otherwise
    the name is cut out and the runs of whitespace it leaves collapse to
    one space.
    """
    if not author_name:
        return lambda text: text
    pattern = re.compile(re.escape(author_name), re.IGNORECASE)

    def strip(text: str) -> str:
        if not pattern.search(text):
            return text
        return re.sub(r"\s{2,}", " ", pattern.sub("", text))

    return strip


def chain(*transforms: Optional[Callable[[str], str]]) -> Optional[Callable[[str], str]]:
    """Compose text transforms left to right, skipping ``None``."""
    steps = [t for t in transforms if t is not None]
    if not steps:
        return None

    def apply(text: str) -> str:
        for step in steps:
            text = step(text)
        return text

    return apply
