"""Upstream caller: the single forwarding request to the inference backend.

The request is sent with ``stream=True`` so the body can be bridged as it
arrives. On success the open response is handed back as an
``UpstreamStream``; whoever consumes it must call ``aclose``.
"""

from typing import AsyncIterator, Dict, Optional

import httpx

from edge_relay.config import HeaderNames, UpstreamConfig
from edge_relay.errors import BackendUnavailable
from edge_relay.models import UpstreamPayload
from edge_relay.telemetry import logger


class UpstreamStream:
    """An open upstream response plus the client that owns its connection."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient) -> None:
        self.response = response
        self._client = client
        self._closed = False

    @property
    def status_code(self) -> int:
        return self.response.status_code

    def forwarded_headers(self, names: HeaderNames) -> Dict[str, str]:
        """Copy the caller-visible upstream headers; drop everything else."""
        headers: Dict[str, str] = {}
        for name in names.forwarded:
            value = self.response.headers.get(name)
            if value:
                headers[name] = value
        return headers

    def iter_bytes(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.response.aclose()
        finally:
            await self._client.aclose()


class UpstreamCaller:
    """Sends relayed chat requests to the configured inference backend."""

    def __init__(
        self,
        config: UpstreamConfig,
        headers: HeaderNames,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        excerpt_chars: int = 2_000,
    ) -> None:
        self.config = config
        self.headers = headers
        self.excerpt_chars = excerpt_chars
        self._transport = transport

    def _timeout(self) -> httpx.Timeout:
        # No overall deadline on the body: a stream may legitimately run long.
        return httpx.Timeout(
            connect=self.config.connect_timeout_seconds,
            read=self.config.read_timeout_seconds,
            write=self.config.connect_timeout_seconds,
            pool=self.config.connect_timeout_seconds,
        )

    def _request_headers(self, origin: str, token: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            self.headers.hop: self.config.hop_value,
            "Origin": origin,
            self.headers.token: token,
        }

    async def open(
        self, payload: UpstreamPayload, origin: str, token: str
    ) -> UpstreamStream:
        """Issue the forwarding call and return the open streaming response.

        Args:
            payload: Sanitized conversation and metadata.
            origin: The verified caller origin, forwarded for re-verification.
            token: The verified identity token.

        Returns:
            An UpstreamStream positioned at the start of the body.

        Raises:
            BackendUnavailable: If the backend is unreachable or answers with
                a non-2xx status. The error carries the status and a bounded
                body excerpt, never the raw body.
        """
        client = httpx.AsyncClient(timeout=self._timeout(), transport=self._transport)
        request = client.build_request(
            "POST",
            self.config.url,
            json=payload.model_dump(exclude_none=True),
            headers=self._request_headers(origin, token),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            logger.warning("Upstream unreachable: %s", type(exc).__name__)
            raise BackendUnavailable("Upstream unreachable.") from exc
        except BaseException:
            await client.aclose()
            raise

        if response.is_success:
            return UpstreamStream(response, client)

        try:
            excerpt = await self._read_excerpt(response)
        finally:
            await response.aclose()
            await client.aclose()
        logger.warning("Upstream returned HTTP %s", response.status_code)
        raise BackendUnavailable(
            "Upstream returned HTTP {}.".format(response.status_code),
            status=response.status_code,
            excerpt=excerpt,
        )

    async def _read_excerpt(self, response: httpx.Response) -> str:
        """Read at most enough of an error body for a bounded excerpt."""
        limit = self.excerpt_chars
        collected = bytearray()
        try:
            async for chunk in response.aiter_bytes():
                collected.extend(chunk)
                if len(collected) >= limit * 4:
                    break
        except httpx.HTTPError as exc:
            logger.warning("Upstream error body cut short: %s", type(exc).__name__)
        return collected.decode("utf-8", errors="replace")[:limit]
