from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ContentType(Enum):
    TEXT = "text"
    URL = "url"
    EMAIL = "email"
    CODE = "code"
    SHORT_TEXT = "short-text"
    LONG_TEXT = "long-text"
    EMPTY = "empty"


class BackendName(Enum):
    OLLAMA = "ollama"
    GEMINI = "gemini"


class SecurityLevel(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClipboardChangeEvent:
    previous_value: str
    new_value: str
    content_type: ContentType
    length: int
    is_empty: bool
    is_significant: bool
    timestamp: datetime


@dataclass
class AdaptivePollingState:
    """Mutable polling state, owned and updated only by the clipboard monitor."""

    current_interval_ms: int
    min_interval_ms: int
    max_interval_ms: int
    change_timestamps: list[float] = field(default_factory=list)
    last_activity_time: float = 0.0
    last_change_rate: int = 0
    is_paused: bool = False
    enabled: bool = True


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 500
    stop: tuple[str, ...] = ()
    stream: bool = True


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    backend: BackendName
    model: str
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 500
    stop: tuple[str, ...] = ()
    stream: bool = True
    content_type: ContentType = ContentType.TEXT


@dataclass(frozen=True)
class StreamChunk:
    """One decoded piece of a backend stream.

    Token chunks carry ``text``; the terminal chunk has ``done`` set and
    carries the backend metadata.
    """

    text: str = ""
    done: bool = False
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class TokenEvent:
    token: str
    full_response: str
    done: bool
    backend: BackendName
    model: str


class GenerationResult:
    """Accumulates streamed text for one request.

    Created at dispatch, appended to per token, frozen by ``complete`` or
    ``fail``. Appending to a frozen result raises ``RuntimeError``.
    """

    def __init__(self, backend: BackendName, model: str) -> None:
        self.backend = backend
        self.model = model
        self.full_text = ""
        self.finish_reason: Optional[str] = None
        self.usage: Optional[dict[str, Any]] = None
        self.error: Optional[str] = None
        self.error_type: Optional[str] = None
        self._frozen = False

    @property
    def is_complete(self) -> bool:
        return self._frozen and self.error is None

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def append(self, token: str) -> str:
        if self._frozen:
            raise RuntimeError("GenerationResult is frozen")
        self.full_text += token
        return self.full_text

    def complete(
        self,
        finish_reason: Optional[str] = None,
        model: Optional[str] = None,
        usage: Optional[dict[str, Any]] = None,
    ) -> None:
        if self._frozen:
            raise RuntimeError("GenerationResult is frozen")
        self.finish_reason = finish_reason or "stop"
        if model:
            self.model = model
        self.usage = usage
        self._frozen = True

    def fail(self, error: str, error_type: str) -> None:
        if self._frozen:
            return
        self.error = error
        self.error_type = error_type
        self._frozen = True

    def __repr__(self) -> str:
        return (
            f"<GenerationResult backend={self.backend.value} model={self.model} "
            f"chars={len(self.full_text)} frozen={self._frozen}>"
        )


@dataclass(frozen=True)
class ModelInfo:
    name: str
    display_name: str = ""
    size: Optional[int] = None
    modified: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class BackendConfig:
    backend: BackendName = BackendName.OLLAMA
    model_name: str = "llama3.2"
    gemini_api_key_ref: str = "gemini_api_key"
    position: str = "center-top"
    theme: str = "dark"
    auto_hide: bool = False
    auto_hide_delay: int = 5000
    auto_hide_after_response: bool = False
    auto_hide_delay_after_response: int = 10000

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["backend"] = self.backend.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackendConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "backend" in known:
            known["backend"] = BackendName(known["backend"])
        return cls(**known)


@dataclass(frozen=True)
class SecurityAssessment:
    platform: str
    storage_backend: str
    security_level: SecurityLevel
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class FormatValidation:
    is_valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class RemoteValidation:
    is_valid: bool
    error: Optional[str] = None
    status: Optional[int] = None


@dataclass(frozen=True)
class StoreResult:
    success: bool
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MigrationResult:
    success: bool
    migrated: bool = False
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExportResult:
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ImportResult:
    success: bool
    imported: bool = False
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RoutingDecision:
    requested: BackendName
    backend: BackendName
    fallback_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def fell_back(self) -> bool:
        return self.fallback_reason is not None
