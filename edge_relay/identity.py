"""Site identity verification for the edge relay.

Each allow-listed origin is bound to exactly one opaque asset token. A
caller proves it is a recognized site by sending its origin together with
the token bound to it. Identity is site-level, not user-level.
"""

import hmac
from typing import Mapping, Optional
from urllib.parse import urlsplit

from edge_relay.errors import IdentityError


def normalize_origin(value: Optional[str]) -> str:
    """Normalize an origin to lower-case ``scheme://host[:port]``.

    Returns an empty string for anything that is not a bare origin: a
    missing scheme or host, the literal ``null`` origin, or any path, query,
    fragment or credentials component.

    Args:
        value: The raw origin (e.g. the ``Origin`` request header).

    Returns:
        The normalized origin, or ``""`` if the value is not an origin.
    """
    raw = (value or "").strip()
    if not raw or raw.lower() == "null":
        return ""
    if raw.endswith("/"):
        raw = raw[:-1]

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError:
        return ""

    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return ""
    if parts.path or parts.query or parts.fragment or "@" in parts.netloc:
        return ""

    origin = "{}://{}".format(parts.scheme.lower(), parts.hostname.lower())
    if port is not None:
        origin = "{}:{}".format(origin, port)
    return origin


def is_allowed_origin(origin: Optional[str], identities: Mapping[str, str]) -> bool:
    """Return True if the origin is a key of the identity binding."""
    key = normalize_origin(origin)
    return bool(key) and key in identities


def verify_identity(
    origin: Optional[str],
    token: Optional[str],
    identities: Mapping[str, str],
) -> str:
    """Verify that the caller's token is the one bound to its origin.

    Args:
        origin: The declared origin (``Origin`` header value, may be None).
        token: The caller-supplied identity token (may be None).
        identities: Mapping of normalized origin -> token from config.

    Returns:
        The normalized origin.

    Raises:
        IdentityError: If the origin is not allow-listed or the token does not
            exactly equal the bound token. The error never carries the
            expected token.
    """
    received = (origin or "").strip()
    token_present = bool(token)
    key = normalize_origin(received)

    expected = identities.get(key) if key else None
    if expected is None:
        raise IdentityError("Origin not allowed.", received, token_present)

    if not token_present or not hmac.compare_digest(
        token.encode("utf-8"), expected.encode("utf-8")
    ):
        raise IdentityError(
            "Invalid asset identity: the identity token must match the calling origin.",
            received,
            token_present,
        )

    return key
