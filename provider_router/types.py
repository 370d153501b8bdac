"""
Core Types
==========
Backend identities, configuration, session state, requests, results and
the error taxonomy shared by every part of the router.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class BackendKind(Enum):
    """The three interchangeable backends the router can target"""

    HOSTED_MULTIMODAL = "gemini"
    HOSTED_CHAT = "openai"
    LOCAL_INFERENCE = "ollama"

    @property
    def is_hosted(self) -> bool:
        return self is not BackendKind.LOCAL_INFERENCE

    @classmethod
    def from_name(cls, name: str) -> BackendKind:
        """Resolve a provider name ("gemini", "openai", "ollama") to a kind"""
        normalized = name.strip().lower()
        for kind in cls:
            if kind.value == normalized or kind.name.lower() == normalized:
                return kind
        raise ValueError(f"Unknown provider: '{name}'")


DEFAULT_MODELS: dict[BackendKind, str] = {
    BackendKind.HOSTED_MULTIMODAL: "gemini-2.5-flash",
    BackendKind.HOSTED_CHAT: "gpt-4o-mini",
    BackendKind.LOCAL_INFERENCE: "llama3.2",
}


class Capability(Enum):
    """Operation family a request belongs to"""

    ANALYZE_IMAGE = "analyze-image"
    ANALYZE_AUDIO = "analyze-audio"
    CHAT_TEXT = "chat-text"


class SessionStatus(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DEGRADED = "degraded"


class ErrorKind(Enum):
    """Stable, backend-agnostic failure categories"""

    QUOTA_EXCEEDED = "quota_exceeded"
    ACCESS_DENIED = "access_denied"
    UNAVAILABLE = "unavailable"
    UNSUPPORTED_CAPABILITY = "unsupported_capability"
    CONSTRUCTION_ERROR = "construction_error"
    UNKNOWN = "unknown"


class ConstructionError(ValueError):
    """Raised synchronously when a backend cannot be configured"""

    kind = ErrorKind.CONSTRUCTION_ERROR


class EmptyResponseError(RuntimeError):
    """A backend answered without any text"""


@dataclass(frozen=True)
class BackendConfig:
    """
    Immutable per-backend configuration.

    `model` may be left unset, in which case the kind's default is used;
    whether it was set explicitly decides if a local switch runs discovery.
    """

    kind: BackendKind
    api_key: str | None = field(default=None, repr=False)
    model: str | None = None
    endpoint: str | None = None

    def __post_init__(self) -> None:
        if self.kind.is_hosted:
            if not self.api_key or not self.api_key.strip():
                raise ConstructionError(
                    f"API key required for {self.kind.value} provider"
                )
        elif self.endpoint is None:
            object.__setattr__(self, "endpoint", DEFAULT_OLLAMA_URL)
        if self.endpoint:
            object.__setattr__(self, "endpoint", self.endpoint.rstrip("/"))

    @property
    def model_name(self) -> str:
        return self.model or DEFAULT_MODELS[self.kind]

    @property
    def has_explicit_model(self) -> bool:
        return self.model is not None


@dataclass(frozen=True)
class Session:
    """Snapshot of the router's live state. Replaced as a whole, never edited."""

    kind: BackendKind
    config: BackendConfig
    status: SessionStatus
    available_models: tuple[str, ...] = ()

    @property
    def model(self) -> str:
        return self.config.model_name


@dataclass(frozen=True)
class ImageBytes:
    data: bytes
    mime_type: str = "image/png"
    prompt: str | None = None

    capability = Capability.ANALYZE_IMAGE


@dataclass(frozen=True)
class AudioBytes:
    data: bytes
    mime_type: str = "audio/webm"
    prompt: str | None = None

    capability = Capability.ANALYZE_AUDIO

    @classmethod
    def from_base64(
        cls, encoded: str, mime_type: str, prompt: str | None = None
    ) -> AudioBytes:
        """Build a request from the base64 payload produced by the recorder"""
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 audio payload: {e}") from e
        return cls(data=data, mime_type=mime_type, prompt=prompt)


@dataclass(frozen=True)
class ChatText:
    text: str

    capability = Capability.CHAT_TEXT


AnalysisRequest = ImageBytes | AudioBytes | ChatText


@dataclass(frozen=True)
class AnalysisResult:
    """Uniform answer regardless of backend.

    `degraded` marks best-effort answers produced without the original
    media (e.g. a local model asked about a screenshot it cannot see).
    """

    text: str
    produced_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "timestamp": self.produced_at.isoformat(),
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    raw: BaseException | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class ConnectionStatus:
    ok: bool
    error: str | None = None
