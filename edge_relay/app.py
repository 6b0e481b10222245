"""FastAPI application for the edge relay.

Sits between browser clients and a streaming inference backend. Every
request is identity-checked first, then sanitized, language-tagged and
safety-gated before a single call is forwarded upstream. The upstream
body is bridged into a normalized event stream as it arrives.

Routes:
- POST /api/chat   conversation in, event stream out
- POST /api/voice  audio in; transcript JSON (mode=stt) or event stream (mode=chat)
- POST /api/tts    text in, audio bytes out
- OPTIONS /api/*   preflight, no processing
"""

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from edge_relay.backends import ModelClient
from edge_relay.body import read_json
from edge_relay.bridge import StreamFrame, encode_stream, one_shot_frames, relay_frames
from edge_relay.config import RelayConfig, load_config
from edge_relay.context import RequestContext
from edge_relay.disclosure import (
    author_stripper,
    chain,
    model_id_redactor,
    wants_author_disclosure,
    wants_model_disclosure,
    withheld_reply,
)
from edge_relay.errors import (
    RelayError,
    RequestRejected,
    SanitizerRejected,
    UnsupportedContentType,
)
from edge_relay.headers import cors_headers, security_headers
from edge_relay.identity import verify_identity
from edge_relay.language import detect_language
from edge_relay.models import (
    ChatMessage,
    ErrorDetail,
    ErrorResponse,
    TranscriptResponse,
    UpstreamPayload,
)
from edge_relay.safety import check_conversation
from edge_relay.sanitizer import (
    last_user_text,
    looks_malicious,
    normalize_iso2,
    normalize_messages,
    sanitize_content,
    sanitize_meta,
)
from edge_relay.telemetry import log_request, setup_logging
from edge_relay.upstream import UpstreamCaller
from edge_relay.voice import read_voice_input, synthesize, transcribe

CONFIG_PATH = os.getenv("RELAY_CONFIG", "config/relay.example.json")

_config: Optional[RelayConfig] = None
_model_client: Optional[ModelClient] = None
_upstream: Optional[UpstreamCaller] = None


def get_config() -> RelayConfig:
    """Return the loaded relay configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_model_client() -> ModelClient:
    """Return the model-run backend client (lazy-init from config)."""
    global _model_client
    if _model_client is None:
        _model_client = ModelClient(get_config().backend)
    return _model_client


def get_upstream() -> UpstreamCaller:
    """Return the upstream caller (lazy-init from config)."""
    global _upstream
    if _upstream is None:
        cfg = get_config()
        _upstream = UpstreamCaller(
            cfg.upstream, cfg.headers, excerpt_chars=cfg.limits.error_excerpt_chars
        )
    return _upstream


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Load config, set up logging, and build the backend clients on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_model_client()
    get_upstream()
    yield


app = FastAPI(title="Edge Relay", version="0.1.0", lifespan=lifespan)


def _response_headers(
    request: Request, ctx: Optional[RequestContext] = None
) -> Dict[str, str]:
    """CORS + security headers, plus whatever the request has accumulated."""
    headers = cors_headers(request.headers.get("origin"), get_config())
    headers.update(security_headers())
    if ctx is not None:
        headers.update(ctx.response_headers)
    return headers


def _error_response(
    status: int,
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(
        error=ErrorDetail(type=error_type, message=message),
        context=context or None,
    )
    return JSONResponse(
        status_code=status, content=body.model_dump(exclude_none=True), headers=headers
    )


def _stream_response(
    request: Request,
    ctx: RequestContext,
    frames: AsyncIterator[StreamFrame],
    background: Optional[BackgroundTask] = None,
) -> StreamingResponse:
    headers = _response_headers(request, ctx)
    headers["Cache-Control"] = "no-cache, no-transform"
    headers["X-Accel-Buffering"] = "no"
    return StreamingResponse(
        encode_stream(frames),
        media_type="text/event-stream",
        headers=headers,
        background=background,
    )


def _begin(request: Request, route: str) -> RequestContext:
    """Create the request context and verify the caller's site identity.

    Raises:
        IdentityError: If the origin is not allow-listed or the token is wrong.
    """
    config = get_config()
    ctx = RequestContext(route=route, origin=request.headers.get("origin", ""))
    request.state.relay_context = ctx

    token = request.headers.get(config.headers.token)
    ctx.origin = verify_identity(ctx.origin, token, config.identities)
    ctx.token = token or ""
    ctx.response_headers[config.headers.asset_verified] = "1"
    return ctx


def _require_json(request: Request) -> None:
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" not in content_type:
        raise UnsupportedContentType("content-type must be application/json.")


async def _forward_conversation(request: Request, ctx: RequestContext) -> Response:
    """Safety gate, upstream call and stream bridge for a ready conversation."""
    config = get_config()

    await check_conversation(get_model_client(), config.models.guard, ctx.messages)

    stream = await get_upstream().open(
        UpstreamPayload(messages=ctx.messages, meta=ctx.meta), ctx.origin, ctx.token
    )
    ctx.response_headers.update(stream.forwarded_headers(config.headers))

    redact = None
    if config.redact_model_ids:
        redact = model_id_redactor(config.models.all_ids())
    strip_author = None
    if config.author_name and not wants_author_disclosure(last_user_text(ctx.messages)):
        strip_author = author_stripper(config.author_name)
    transform = chain(redact, strip_author)

    frames = relay_frames(
        stream.iter_bytes(),
        release=stream.aclose,
        is_cancelled=request.is_disconnected,
        transform=transform,
        buffer_limit=config.limits.stream_buffer_limit,
        buffer_keep=config.limits.stream_buffer_keep,
    )
    log_request(
        request_id=ctx.request_id,
        route=ctx.route,
        origin=ctx.origin,
        outcome="streaming",
        language=ctx.language,
    )
    return _stream_response(request, ctx, frames, BackgroundTask(stream.aclose))


def _withheld_response(request: Request, ctx: RequestContext) -> Response:
    log_request(
        request_id=ctx.request_id,
        route=ctx.route,
        origin=ctx.origin,
        outcome="model_withheld",
    )
    reply = withheld_reply(get_config().author_name)
    return _stream_response(request, ctx, one_shot_frames(reply))


def _default_language(ctx: RequestContext) -> None:
    if not ctx.meta.lang_iso2:
        ctx.meta.lang_iso2 = ctx.language


@app.options("/api/{path:path}")
async def preflight(request: Request, path: str) -> Response:
    """Capability negotiation. Never sanitizes, detects or calls a backend."""
    return Response(status_code=204, headers=_response_headers(request))


@app.get("/")
@app.get("/health")
async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"}, headers=_response_headers(request))


_USAGE: Dict[str, Dict[str, Any]] = {
    "chat": {
        "route": "/api/chat",
        "method": "POST",
        "required_headers": ["origin", "content-type", "accept"],
        "body_json": {"messages": [{"role": "user", "content": "Hello"}], "meta": {}},
    },
    "voice": {
        "route": "/api/voice?mode=stt | /api/voice?mode=chat",
        "method": "POST",
        "required_headers": ["origin", "accept"],
        "body": "binary audio, multipart/form-data (audio|file|blob), "
        "or JSON {audio_b64 | audio[], messages?, meta?}",
    },
    "tts": {
        "route": "/api/tts",
        "method": "POST",
        "required_headers": ["origin", "content-type", "accept"],
        "body_json": {"text": "Hello", "lang_iso2": "en"},
    },
}


@app.get("/api/{name}")
async def usage(request: Request, name: str) -> JSONResponse:
    """Describe how to call a relay route."""
    info = _USAGE.get(name)
    if info is None:
        return _error_response(
            404, "not_found", "Not found.", headers=_response_headers(request)
        )
    body = dict(info)
    body["required_headers"] = info["required_headers"] + [get_config().headers.token]
    return JSONResponse(body, headers=_response_headers(request))


@app.post("/api/chat", response_model=None)
async def chat(request: Request) -> Response:
    """Handle a chat request.

    Request flow:
    1. Verify origin and identity token
    2. Sanitize and bound the conversation and metadata
    3. Answer model-disclosure questions with a fixed reply
    4. Detect the conversation language
    5. Safety gate (fail closed)
    6. Forward upstream and bridge the body to an event stream
    """
    config = get_config()
    ctx = _begin(request, "/api/chat")
    _require_json(request)

    body = await read_json(request, config.limits.max_body_chars)
    if not isinstance(body, dict):
        raise RequestRejected("JSON body must be an object.")

    ctx.messages = normalize_messages(
        body.get("messages"),
        config.limits.max_messages,
        config.limits.max_message_chars,
    )
    if not ctx.messages:
        raise RequestRejected("messages[] required.")
    ctx.meta = sanitize_meta(body.get("meta"))

    if wants_model_disclosure(last_user_text(ctx.messages), config.models.all_ids()):
        return _withheld_response(request, ctx)

    ctx.language = await detect_language(
        ctx.messages,
        ctx.meta,
        get_model_client(),
        config.models.language,
        config.limits.language_timeout_seconds,
    )
    _default_language(ctx)
    return await _forward_conversation(request, ctx)


@app.post("/api/voice", response_model=None)
async def voice(request: Request, mode: str = "stt") -> Response:
    """Handle a voice request: transcribe, then reply with JSON or continue to chat."""
    config = get_config()
    ctx = _begin(request, "/api/voice")
    mode = mode.lower()
    if mode not in ("stt", "chat"):
        raise RequestRejected("mode must be 'stt' or 'chat'.")

    voice_input = await read_voice_input(request, config.limits)
    prior_messages, raw_meta = voice_input.messages, voice_input.meta
    raw_transcript = await transcribe(
        get_model_client(),
        config.models,
        voice_input.audio,
        config.limits.stt_fallback_max_bytes,
    )
    del voice_input

    transcript = sanitize_content(raw_transcript, config.limits.max_message_chars)
    if not transcript:
        raise RequestRejected("No transcription produced.")
    if looks_malicious(transcript):
        raise SanitizerRejected("Blocked by security sanitizer.")

    ctx.meta = sanitize_meta(raw_meta)
    ctx.response_headers[config.headers.voice_timeout] = str(
        config.limits.voice_timeout_seconds
    )

    if mode == "chat" and wants_model_disclosure(transcript, config.models.all_ids()):
        return _withheld_response(request, ctx)

    transcript_message = ChatMessage(role="user", content=transcript)
    ctx.language = await detect_language(
        [transcript_message],
        ctx.meta,
        get_model_client(),
        config.models.language,
        config.limits.language_timeout_seconds,
    )
    ctx.response_headers[config.headers.stt_language] = ctx.language

    if mode == "stt":
        log_request(
            request_id=ctx.request_id,
            route=ctx.route,
            origin=ctx.origin,
            outcome="success",
            language=ctx.language,
        )
        result = TranscriptResponse(
            transcript=transcript,
            lang_iso2=ctx.language,
            voice_timeout_sec=config.limits.voice_timeout_seconds,
        )
        return JSONResponse(result.model_dump(), headers=_response_headers(request, ctx))

    ctx.messages = normalize_messages(
        prior_messages,
        max(config.limits.max_messages - 1, 0),
        config.limits.max_message_chars,
    )
    ctx.messages.append(transcript_message)
    _default_language(ctx)
    return await _forward_conversation(request, ctx)


@app.post("/api/tts", response_model=None)
async def tts(request: Request) -> Response:
    """Synthesize speech for sanitized text."""
    config = get_config()
    ctx = _begin(request, "/api/tts")
    _require_json(request)

    body = await read_json(request, config.limits.max_body_chars)
    if not isinstance(body, dict):
        raise RequestRejected("JSON body must be an object.")

    text = sanitize_content(body.get("text") or "", config.limits.max_message_chars)
    if not text:
        raise RequestRejected("text required.")
    if looks_malicious(text):
        raise SanitizerRejected("Blocked by security sanitizer.")

    language = normalize_iso2(body.get("lang_iso2")) or config.models.tts_default_language
    ctx.language = language
    ctx.response_headers[config.headers.tts_language] = language

    audio = await synthesize(get_model_client(), config.models, text, language)
    log_request(
        request_id=ctx.request_id,
        route=ctx.route,
        origin=ctx.origin,
        outcome="success",
        language=language,
    )
    return Response(
        content=audio.data,
        media_type=audio.content_type,
        headers=_response_headers(request, ctx),
    )


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Render any relay rejection as the JSON error envelope."""
    ctx: Optional[RequestContext] = getattr(request.state, "relay_context", None)
    log_request(
        request_id=ctx.request_id if ctx else "-",
        route=ctx.route if ctx else request.url.path,
        origin=request.headers.get("origin", ""),
        outcome=exc.outcome,
        language=ctx.language if ctx else None,
        categories=exc.context.get("categories"),
        error=exc.detail,
    )
    return _error_response(
        exc.status_code,
        exc.error_type,
        exc.detail,
        context=exc.context,
        headers=_response_headers(request, ctx),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        "validation_error",
        "Request validation failed.",
        headers=_response_headers(request),
    )
