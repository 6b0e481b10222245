"""Safety gate: submit the sanitized conversation to the content classifier.

The gate fails closed. An unparseable verdict counts as unsafe, and a
classifier that cannot be reached rejects the request instead of letting
it through.
"""

from dataclasses import dataclass, field
from typing import Any, List

from edge_relay.backends import BackendError
from edge_relay.errors import BackendUnavailable, SafetyRejected
from edge_relay.models import ChatMessage
from edge_relay.shapes import first_present
from edge_relay.telemetry import logger

UNPARSEABLE_CATEGORY = "GUARD_UNPARSEABLE"

_VERDICT_PATHS = (("response",), ("result", "response"), ("result",), ())


@dataclass
class SafetyVerdict:
    """Outcome of one classifier call."""

    safe: bool
    categories: List[str] = field(default_factory=list)


def parse_verdict(reply: Any) -> SafetyVerdict:
    """Interpret a classifier reply.

    Accepts a ``{"safe": bool, "categories": [...]}`` object or a free-text
    "safe"/"unsafe" string, at any of the usual nesting levels. Any other
    shape is unsafe with the ``GUARD_UNPARSEABLE`` category.
    """
    verdict = first_present(reply, _VERDICT_PATHS)

    if isinstance(verdict, dict) and isinstance(verdict.get("safe"), bool):
        categories = verdict.get("categories")
        if not isinstance(categories, list):
            categories = []
        return SafetyVerdict(
            safe=verdict["safe"], categories=[str(c) for c in categories]
        )

    if isinstance(verdict, str):
        lowered = verdict.lower()
        if "unsafe" in lowered:
            return SafetyVerdict(safe=False)
        if "safe" in lowered:
            return SafetyVerdict(safe=True)

    return SafetyVerdict(safe=False, categories=[UNPARSEABLE_CATEGORY])


async def check_conversation(
    classifier: Any, model: str, messages: List[ChatMessage]
) -> SafetyVerdict:
    """Run the safety classifier over the full conversation.

    Args:
        classifier: A ``ModelClient``-like object.
        model: The safety classifier model identifier.
        messages: The sanitized conversation.

    Returns:
        The (safe) verdict.

    Raises:
        BackendUnavailable: If the classifier call fails.
        SafetyRejected: If the verdict is unsafe or unparseable.
    """
    payload = {"messages": [m.model_dump() for m in messages]}
    try:
        reply = await classifier.run(model, payload)
    except BackendError as exc:
        logger.warning("Safety classifier failed: %s", exc.detail)
        raise BackendUnavailable("Safety check unavailable.") from exc
    except Exception as exc:
        logger.warning("Safety classifier failed: %s", type(exc).__name__)
        raise BackendUnavailable("Safety check unavailable.") from exc

    verdict = parse_verdict(reply)
    if not verdict.safe:
        raise SafetyRejected(verdict.categories)
    return verdict
