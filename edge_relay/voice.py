"""Voice sub-pipeline: audio intake, transcription and speech synthesis.

Audio arrives in one of three shapes (binary body, multipart field, or a
JSON field holding base64 or a byte array). All of them converge on an
``AudioPayload`` capped at the same maximum, checked before any backend
call. Transcription falls back to a secondary model for small payloads;
synthesis walks a three-stage fallback chain.
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException

from edge_relay.backends import BackendError
from edge_relay.body import read_json, read_limited
from edge_relay.config import Limits, ModelNames
from edge_relay.errors import BackendUnavailable, PayloadTooLarge, RequestRejected
from edge_relay.sanitizer import normalize_iso2
from edge_relay.shapes import AUDIO_PATHS, TRANSCRIPT_PATHS, first_present
from edge_relay.telemetry import logger

AUDIO_FIELDS = ("audio", "file", "blob")

# Multipart framing around the audio part.
_MULTIPART_OVERHEAD = 64 * 1024

_MIN_ENCODED_AUDIO_CHARS = 16


@dataclass
class AudioPayload:
    """Request-scoped audio bytes and the shape they arrived in."""

    data: bytes
    form: str  # "binary" | "multipart" | "json"
    b64: Optional[str] = None

    def __len__(self) -> int:
        return len(self.data)

    def as_base64(self) -> str:
        if self.b64 and len(self.b64) >= _MIN_ENCODED_AUDIO_CHARS:
            return self.b64
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class VoiceInput:
    """Audio plus the optional prior conversation and metadata (JSON shape only)."""

    audio: AudioPayload
    messages: Any = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SynthesizedAudio:
    """Audio bytes returned by the synthesis chain."""

    data: bytes
    content_type: str = "audio/mpeg"


def _check_size(audio: AudioPayload, limits: Limits) -> AudioPayload:
    if len(audio) > limits.max_audio_bytes:
        raise PayloadTooLarge("Audio too large.")
    if len(audio) < limits.min_audio_bytes:
        raise RequestRejected("Empty audio.")
    return audio


async def _read_multipart(request: Request, limits: Limits) -> AudioPayload:
    declared = request.headers.get("content-length")
    if (
        declared
        and declared.isdigit()
        and int(declared) > limits.max_audio_bytes + _MULTIPART_OVERHEAD
    ):
        raise PayloadTooLarge("Audio too large.")

    try:
        form = await request.form()
    except (MultiPartException, HTTPException) as exc:
        raise RequestRejected("Invalid multipart/form-data.") from exc

    try:
        upload = None
        for name in AUDIO_FIELDS:
            item = form.get(name)
            if isinstance(item, UploadFile):
                upload = item
                break
        if upload is None:
            raise RequestRejected(
                "Missing audio file field (expected: {}).".format("|".join(AUDIO_FIELDS))
            )
        data = await upload.read(limits.max_audio_bytes + 1)
    finally:
        await form.close()

    return AudioPayload(data=data, form="multipart")


def _decode_json_audio(body: Dict[str, Any], limits: Limits) -> AudioPayload:
    audio_b64 = body.get("audio_b64")
    if isinstance(audio_b64, str) and audio_b64:
        if len(audio_b64) > limits.max_voice_json_b64_chars:
            raise PayloadTooLarge("audio_b64 too large; send binary audio instead.")
        try:
            data = base64.b64decode(audio_b64)
        except (binascii.Error, ValueError) as exc:
            raise RequestRejected("Invalid audio_b64.") from exc
        return AudioPayload(data=data, form="json", b64=audio_b64)

    audio = body.get("audio")
    if isinstance(audio, list) and audio:
        if len(audio) > limits.max_audio_bytes:
            raise PayloadTooLarge("Audio too large.")
        try:
            data = bytes(int(value) & 255 for value in audio)
        except (TypeError, ValueError) as exc:
            raise RequestRejected("Invalid audio array.") from exc
        return AudioPayload(data=data, form="json")

    raise RequestRejected("Missing audio (audio_b64 or audio[]).")


async def read_voice_input(request: Request, limits: Limits) -> VoiceInput:
    """Accept audio in any of the three wire shapes.

    Raises:
        PayloadTooLarge: If the audio (or its encoding) exceeds its cap.
        RequestRejected: If the body is malformed or carries no audio.
    """
    content_type = (request.headers.get("content-type") or "").lower()

    if "application/json" in content_type:
        # ASCII in practice (base64 or digits); larger audio goes as binary.
        body = await read_json(
            request, limits.max_voice_json_bytes, limits.max_voice_json_bytes
        )
        if not isinstance(body, dict):
            raise RequestRejected("JSON body must be an object.")
        audio = _check_size(_decode_json_audio(body, limits), limits)
        meta = body.get("meta")
        return VoiceInput(
            audio=audio,
            messages=body.get("messages"),
            meta=meta if isinstance(meta, dict) else {},
        )

    if "multipart/form-data" in content_type:
        return VoiceInput(audio=_check_size(await _read_multipart(request, limits), limits))

    data = await read_limited(request, limits.max_audio_bytes, "Audio")
    return VoiceInput(audio=_check_size(AudioPayload(data=data, form="binary"), limits))


async def transcribe(
    client: Any,
    models: ModelNames,
    audio: AudioPayload,
    fallback_max_bytes: int,
) -> str:
    """Transcribe audio with the primary model, falling back for small payloads.

    The primary model takes base64; the fallback takes an array of byte
    values and is only tried when the audio is at most
    ``fallback_max_bytes``.

    Returns:
        The raw (unsanitized) transcript, possibly empty.

    Raises:
        BackendUnavailable: If no model produced a reply.
    """
    try:
        reply = await client.run(models.stt_primary, {"audio": audio.as_base64()})
    except BackendError as exc:
        if len(audio) > fallback_max_bytes:
            logger.warning("Transcription failed, audio too large for fallback: %s", exc.detail)
            raise BackendUnavailable("Transcription unavailable.") from exc

        logger.warning("Primary transcription failed, trying fallback: %s", exc.detail)
        try:
            reply = await client.run(models.stt_fallback, {"audio": list(audio.data)})
        except BackendError as fallback_exc:
            raise BackendUnavailable("Transcription unavailable.") from fallback_exc

    return first_present(reply, TRANSCRIPT_PATHS, str) or ""


def _decode_audio_field(reply: Any) -> Optional[bytes]:
    encoded = first_present(reply, AUDIO_PATHS, str)
    if encoded is None or len(encoded) <= _MIN_ENCODED_AUDIO_CHARS:
        return None
    try:
        return base64.b64decode(encoded) or None
    except (binascii.Error, ValueError):
        logger.warning("Synthesis reply carried undecodable audio")
        return None


async def synthesize(
    client: Any, models: ModelNames, text: str, language: str
) -> SynthesizedAudio:
    """Synthesize speech, walking the fallback chain.

    1. The language's primary voice, raw audio response.
    2. The same voice, base64 audio inside a JSON reply.
    3. The multilingual fallback model.

    The first stage that yields non-trivial audio wins.

    Raises:
        BackendUnavailable: If every stage fails.
    """
    iso2 = normalize_iso2(language) or models.tts_default_language
    voice = models.tts_voices.get(iso2) or models.tts_voices.get(
        models.tts_default_language
    )
    params = {"text": text, "encoding": "mp3", "container": "none"}

    if voice:
        try:
            resp = await client.run_raw(voice, params)
            content_type = resp.headers.get("content-type", "")
            if "audio" in content_type.lower() and len(resp.content) > _MIN_ENCODED_AUDIO_CHARS:
                return SynthesizedAudio(data=resp.content, content_type=content_type)
        except BackendError as exc:
            logger.warning("Raw synthesis failed: %s", exc.detail)

        try:
            audio = _decode_audio_field(await client.run(voice, params))
            if audio:
                return SynthesizedAudio(data=audio)
        except BackendError as exc:
            logger.warning("Encoded synthesis failed: %s", exc.detail)

    try:
        audio = _decode_audio_field(
            await client.run(models.tts_fallback, {"prompt": text, "lang": iso2})
        )
    except BackendError as exc:
        raise BackendUnavailable("Speech synthesis unavailable.") from exc
    if not audio:
        raise BackendUnavailable("Speech synthesis unavailable.")
    return SynthesizedAudio(data=audio)
