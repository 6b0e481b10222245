"""CORS and security response headers for the edge relay."""

from typing import Dict, Optional

from edge_relay.config import RelayConfig
from edge_relay.identity import is_allowed_origin

ALLOWED_METHODS = "GET, POST, OPTIONS"

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Cache-Control": "no-store, no-transform",
    "Content-Security-Policy": (
        "default-src 'none'; frame-ancestors 'none'; base-uri 'none'; form-action 'none'"
    ),
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-DNS-Prefetch-Control": "off",
    "Permissions-Policy": "camera=(), geolocation=(), microphone=()",
    "Cross-Origin-Resource-Policy": "cross-origin",
}


def security_headers() -> Dict[str, str]:
    """Return the static security header set applied to every response."""
    return dict(_SECURITY_HEADERS)


def allowed_request_headers(config: RelayConfig) -> str:
    return ", ".join(
        [
            "content-type",
            "accept",
            config.headers.token,
            "{}-lang-hint".format(config.headers.prefix),
            "{}-voice-language".format(config.headers.prefix),
        ]
    )


def cors_headers(origin: Optional[str], config: RelayConfig) -> Dict[str, str]:
    """Build CORS headers, reflecting the origin only if it is allow-listed.

    Args:
        origin: The raw ``Origin`` request header (may be None).
        config: The loaded relay configuration.

    Returns:
        A dict of CORS headers.
    """
    headers: Dict[str, str] = {}
    if is_allowed_origin(origin, config.identities):
        headers["Access-Control-Allow-Origin"] = (origin or "").strip()
        headers["Vary"] = "Origin, Access-Control-Request-Method, Access-Control-Request-Headers"

    headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
    headers["Access-Control-Allow-Headers"] = allowed_request_headers(config)
    headers["Access-Control-Expose-Headers"] = ", ".join(config.headers.exposed)
    headers["Access-Control-Max-Age"] = "86400"
    return headers
