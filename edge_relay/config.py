"""Configuration loader for the edge relay.

Reads a JSON config file containing the upstream endpoint, the model-run
backend, model identifiers, header names, limits, and the origin -> token
identity binding. The binding may be extended with a YAML registry file.
API keys are resolved from environment variables, never stored in the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from edge_relay.identity import normalize_origin


@dataclass
class UpstreamConfig:
    """The inference backend that receives relayed chat requests."""

    url: str
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: Optional[float] = None
    hop_value: str = "gateway"


@dataclass
class BackendConfig:
    """The model-run backend used for safety, speech and language calls."""

    base_url: str
    api_key_env: str
    timeout_seconds: float = 60.0

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass
class ModelNames:
    """Model identifiers. Internal only; never disclosed to callers."""

    guard: str = "@cf/meta/llama-guard-3-8b"
    stt_primary: str = "@cf/openai/whisper-large-v3-turbo"
    stt_fallback: str = "@cf/openai/whisper"
    tts_voices: Dict[str, str] = field(
        default_factory=lambda: {
            "en": "@cf/deepgram/aura-2-en",
            "es": "@cf/deepgram/aura-2-es",
        }
    )
    tts_default_language: str = "en"
    tts_fallback: str = "@cf/myshell-ai/melotts"
    language: str = "@cf/meta/llama-3.2-3b-instruct"

    def all_ids(self) -> list:
        """Every configured model identifier, longest first."""
        ids = {
            self.guard,
            self.stt_primary,
            self.stt_fallback,
            self.tts_fallback,
            self.language,
            *self.tts_voices.values(),
        }
        return sorted((i for i in ids if i), key=len, reverse=True)


@dataclass
class HeaderNames:
    """Names of the identity, hop and caller-visible relay headers."""

    token: str = "x-ops-asset-id"
    prefix: str = "x-relay"

    @property
    def hop(self) -> str:
        return "{}-hop".format(self.prefix)

    @property
    def language(self) -> str:
        return "{}-lang-iso2".format(self.prefix)

    @property
    def model(self) -> str:
        return "{}-model".format(self.prefix)

    @property
    def translated(self) -> str:
        return "{}-translated".format(self.prefix)

    @property
    def embeddings(self) -> str:
        return "{}-embeddings".format(self.prefix)

    @property
    def stt_language(self) -> str:
        return "{}-stt-iso2".format(self.prefix)

    @property
    def tts_language(self) -> str:
        return "{}-tts-iso2".format(self.prefix)

    @property
    def voice_timeout(self) -> str:
        return "{}-voice-timeout-sec".format(self.prefix)

    @property
    def asset_verified(self) -> str:
        return "{}-asset-verified".format(self.prefix)

    @property
    def forwarded(self) -> list:
        """Upstream response headers copied verbatim onto relay responses."""
        return [self.language, self.model, self.translated, self.embeddings]

    @property
    def exposed(self) -> list:
        """Response headers the browser is allowed to read."""
        return [
            self.stt_language,
            self.voice_timeout,
            self.tts_language,
            self.language,
            self.model,
            self.translated,
            self.embeddings,
            self.asset_verified,
        ]


@dataclass
class Limits:
    """Size and time bounds applied to every request."""

    max_body_chars: int = 8_000
    max_messages: int = 30
    max_message_chars: int = 1_000
    max_audio_bytes: int = 12 * 1024 * 1024
    max_voice_json_b64_chars: int = 2_500_000
    max_voice_json_bytes: int = 4 * 1024 * 1024
    min_audio_bytes: int = 16
    stt_fallback_max_bytes: int = 1_500_000
    voice_timeout_seconds: int = 120
    language_timeout_seconds: float = 4.0
    stream_buffer_limit: int = 1_000_000
    stream_buffer_keep: int = 100_000
    error_excerpt_chars: int = 2_000


@dataclass
class RelayConfig:
    """Top-level relay configuration. Read-only once loaded."""

    upstream: UpstreamConfig
    backend: BackendConfig
    identities: Dict[str, str] = field(default_factory=dict)  # origin -> token
    models: ModelNames = field(default_factory=ModelNames)
    headers: HeaderNames = field(default_factory=HeaderNames)
    limits: Limits = field(default_factory=Limits)
    redact_model_ids: bool = True
    author_name: str = ""
    log_file: str = "logs/relay.log"


def _bind(identities: Dict[str, str], origin: Any, token: Any) -> None:
    """Add one origin -> token pair, enforcing a one-to-one binding."""
    key = normalize_origin(str(origin or ""))
    if not key:
        raise ValueError("Invalid origin in identity binding: {!r}".format(origin))
    if not isinstance(token, str) or not token:
        raise ValueError("Missing token for origin {}".format(key))

    existing = identities.get(key)
    if existing is not None and existing != token:
        raise ValueError("Conflicting tokens for origin {}".format(key))
    for other_origin, other_token in identities.items():
        if other_token == token and other_origin != key:
            raise ValueError(
                "Token for {} is already bound to {}".format(key, other_origin)
            )
    identities[key] = token


def load_identity_file(path: Union[str, Path]) -> Dict[str, str]:
    """Load an origin -> token registry from a YAML file.

    The file holds a top-level ``identities`` list of ``{origin, token}``
    entries.

    Raises:
        FileNotFoundError: If the registry file does not exist.
        ValueError: If the YAML is not a mapping or an entry is invalid.
    """
    registry_path = Path(path)
    if not registry_path.exists():
        raise FileNotFoundError("Identity file not found: {}".format(path))

    with open(registry_path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Identity file must contain a YAML mapping at the top level")

    identities: Dict[str, str] = {}
    for entry in raw.get("identities") or []:
        if not isinstance(entry, dict):
            raise ValueError("Identity entries must be mappings")
        _bind(identities, entry.get("origin"), entry.get("token"))
    return identities


def _build(cls: type, raw: Dict[str, Any], section: str) -> Any:
    """Construct a config dataclass, rejecting unknown keys."""
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ValueError("Invalid '{}' section: {}".format(section, exc)) from exc


def load_config(path: Union[str, Path]) -> RelayConfig:
    """Load relay configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved RelayConfig instance.

    Raises:
        FileNotFoundError: If the config file (or its identity file) does
            not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    if "upstream" not in raw or "backend" not in raw:
        raise ValueError("Config must define 'upstream' and 'backend' sections")

    identities: Dict[str, str] = {}
    for origin, token in raw.get("identities", {}).items():
        _bind(identities, origin, token)

    identity_file = raw.get("identity_file")
    if identity_file:
        identity_path = Path(identity_file)
        if not identity_path.is_absolute():
            identity_path = path.parent / identity_path
        for origin, token in load_identity_file(identity_path).items():
            _bind(identities, origin, token)

    return RelayConfig(
        upstream=_build(UpstreamConfig, raw["upstream"], "upstream"),
        backend=_build(BackendConfig, raw["backend"], "backend"),
        identities=identities,
        models=_build(ModelNames, raw.get("models", {}), "models"),
        headers=_build(HeaderNames, raw.get("headers", {}), "headers"),
        limits=_build(Limits, raw.get("limits", {}), "limits"),
        redact_model_ids=raw.get("redact_model_ids", True),
        author_name=raw.get("author_name", ""),
        log_file=raw.get("log_file", "logs/relay.log"),
    )
