"""Error taxonomy for the edge relay.

Every rejection the relay can produce before response headers are
committed is a RelayError subclass. The application renders them all
through one exception handler into the JSON error envelope.
"""

from typing import Any, Dict, List, Optional


class RelayError(Exception):
    """Base class for structured relay rejections."""

    status_code = 500
    error_type = "relay_error"
    outcome = "error"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class IdentityError(RelayError):
    """Origin not allow-listed, or identity token mismatch."""

    status_code = 403
    error_type = "identity_error"
    outcome = "identity_error"

    def __init__(self, detail: str, origin: str, token_present: bool) -> None:
        super().__init__(
            detail,
            context={"origin": origin or "(none)", "token_present": token_present},
        )


class RequestRejected(RelayError):
    """Missing or invalid JSON, empty required fields, oversized payloads."""

    status_code = 400
    error_type = "validation_error"
    outcome = "validation_error"

    def __init__(self, detail: str, status_code: int = 400) -> None:
        super().__init__(detail)
        self.status_code = status_code


class PayloadTooLarge(RequestRejected):
    """A request body or audio payload exceeded its configured cap."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=413)


class UnsupportedContentType(RequestRejected):
    """The declared content type is not accepted by the route."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=415)


class SanitizerRejected(RelayError):
    """Text that must be forwarded whole (transcript, TTS text) looks malicious."""

    status_code = 403
    error_type = "sanitizer_rejected"
    outcome = "sanitizer_rejected"


class SafetyRejected(RelayError):
    """The safety classifier ran and returned an unsafe verdict."""

    status_code = 403
    error_type = "safety_rejected"
    outcome = "safety_rejected"

    def __init__(self, categories: List[str]) -> None:
        super().__init__(
            "Blocked by safety filter.", context={"categories": list(categories)}
        )


class BackendUnavailable(RelayError):
    """A classifier, inference, transcription or synthesis call failed."""

    status_code = 502
    error_type = "upstream_unavailable"
    outcome = "upstream_error"

    def __init__(
        self,
        detail: str,
        status: Optional[int] = None,
        excerpt: Optional[str] = None,
    ) -> None:
        context: Dict[str, Any] = {}
        if status is not None:
            context["status"] = status
        if excerpt is not None:
            context["excerpt"] = excerpt
        super().__init__(detail, context=context)
