"""Client for the model-run backend.

The safety classifier, the transcription and synthesis models, and the
language classifier are all reached through one HTTP API: a POST of a
JSON payload to ``{base_url}/{model}``. Replies are returned undecoded
beyond JSON parsing; callers inspect their shape with ``edge_relay.shapes``.
"""

from typing import Any, Dict, Optional

import httpx

from edge_relay.config import BackendConfig


class BackendError(Exception):
    """Raised when a model-run call fails or returns a non-2xx response."""

    def __init__(self, model: str, detail: str, status: Optional[int] = None) -> None:
        self.model = model
        self.detail = detail
        self.status = status
        super().__init__("Backend call to {} failed: {}".format(model, detail))


class ModelClient:
    """Issues model-run calls. Holds configuration only, no connections."""

    def __init__(
        self,
        config: BackendConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._transport = transport

    def _url(self, model: str) -> str:
        return "{}/{}".format(self.config.base_url.rstrip("/"), model.lstrip("/"))

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.config.api_key
        if api_key:
            headers["Authorization"] = "Bearer {}".format(api_key)
        return headers

    async def run_raw(self, model: str, payload: Dict[str, Any]) -> httpx.Response:
        """POST a payload to a model and return the fully read response.

        Raises:
            BackendError: On transport failure or a non-2xx status.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(
                    self._url(model), json=payload, headers=self._headers()
                )
        except httpx.HTTPError as exc:
            raise BackendError(model, type(exc).__name__) from exc

        if not resp.is_success:
            raise BackendError(
                model, "HTTP {}".format(resp.status_code), status=resp.status_code
            )
        return resp

    async def run(self, model: str, payload: Dict[str, Any]) -> Any:
        """POST a payload to a model and return the decoded JSON reply.

        Raises:
            BackendError: On transport failure, a non-2xx status, or a body
                that is not JSON.
        """
        resp = await self.run_raw(model, payload)
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(model, "reply is not JSON") from exc
