"""Probing of backend reply shapes.

Backends nest the same value under alternative keys (``response``,
``result.response``, ``response.response``, ...). Each lookup here is an
ordered list of key paths; the first path that resolves to a value of the
wanted type wins.
"""

from typing import Any, Optional, Sequence, Tuple, Type, Union

KeyPath = Tuple[str, ...]

DELTA_PATHS: Sequence[KeyPath] = (
    ("response",),
    ("result", "response"),
    ("response", "response"),
)

TRANSCRIPT_PATHS: Sequence[KeyPath] = (
    ("text",),
    ("result", "text"),
    ("response", "text"),
)

AUDIO_PATHS: Sequence[KeyPath] = (
    ("audio",),
    ("result", "audio"),
    ("response", "audio"),
)

_MISSING = object()


def _walk(obj: Any, path: KeyPath) -> Any:
    current = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def first_present(
    obj: Any,
    paths: Sequence[KeyPath],
    kind: Optional[Union[Type, Tuple[Type, ...]]] = None,
) -> Optional[Any]:
    """Return the value at the first path that resolves, or None.

    Args:
        obj: The decoded backend reply.
        paths: Key paths to try in priority order. An empty path selects
            ``obj`` itself.
        kind: If given, a path only counts when its value is an instance
            of this type.

    Returns:
        The first matching non-None value, or None if no path matches.
    """
    for path in paths:
        value = _walk(obj, path)
        if value is _MISSING or value is None:
            continue
        if kind is not None and not isinstance(value, kind):
            continue
        return value
    return None


def extract_delta(obj: Any) -> Optional[str]:
    """Extract the incremental text delta from an inference backend object."""
    return first_present(obj, DELTA_PATHS, str)
