"""Bounded reading of request bodies."""

import json
from typing import Any, Optional

from fastapi import Request

from edge_relay.errors import PayloadTooLarge, RequestRejected


async def read_limited(request: Request, limit: int, what: str = "Request") -> bytes:
    """Read the request body, giving up as soon as it exceeds ``limit`` bytes.

    Raises:
        PayloadTooLarge: If the declared or actual body size exceeds ``limit``.
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge("{} too large.".format(what))

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge("{} too large.".format(what))
    return bytes(body)


async def read_json(request: Request, max_chars: int, max_bytes: Optional[int] = None) -> Any:
    """Read and decode a JSON body bounded to ``max_chars`` characters.

    ``max_bytes`` caps the raw read; it defaults to four bytes per
    character, the most UTF-8 needs.

    Raises:
        PayloadTooLarge: If the body exceeds either bound.
        RequestRejected: If the body is empty or not valid JSON.
    """
    raw = await read_limited(request, max_bytes if max_bytes is not None else max_chars * 4)
    text = raw.decode("utf-8", errors="replace")
    if len(text) > max_chars:
        raise PayloadTooLarge("Request too large.")
    if not text.strip():
        raise RequestRejected("Empty JSON body.")
    try:
        return json.loads(text)
    except ValueError as exc:
        raise RequestRejected("Invalid JSON.") from exc
