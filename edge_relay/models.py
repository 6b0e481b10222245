"""Request and response models for the edge relay."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """A single sanitized message in a conversation."""

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class RequestMeta(BaseModel):
    """Optional advisory fields forwarded to the inference backend.

    Unknown fields are dropped rather than passed through.
    """

    model_config = ConfigDict(extra="ignore")

    lang_iso2: Optional[str] = Field(default=None, description="Two-letter language code")
    tone: Optional[str] = Field(default=None, description="Requested output tone/register")
    model: Optional[str] = Field(default=None, description="Requested model tier")
    translate_to: Optional[str] = Field(default=None, description="Translation target")
    want_embeddings: Optional[bool] = None


class UpstreamPayload(BaseModel):
    """Body of the single forwarding call to the inference backend."""

    messages: List[ChatMessage]
    meta: RequestMeta


class TranscriptResponse(BaseModel):
    """Result of a transcription-only voice request."""

    transcript: str
    lang_iso2: str
    voice_timeout_sec: int


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
    context: Optional[Dict[str, Any]] = None
