"""Value objects for chats, messages and generation settings/results."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from .exceptions import ConfigurationError, ErrorKind


def utc_now_iso() -> str:
    """Return a stable UTC timestamp string."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class _ClosedChoice(str, Enum):
    @classmethod
    def parse(cls, value: Any):
        """Case-insensitive lookup that fails fast on values outside the closed set."""
        if isinstance(value, cls):
            return value
        needle = str(value).strip().lower()
        for member in cls:
            if member.value == needle:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ConfigurationError(f"Invalid {cls.__name__} '{value}'; expected one of: {allowed}")


class StylePreset(_ClosedChoice):
    CREATIVE = "creative"
    BALANCED = "balanced"
    PRECISE = "precise"


class Role(_ClosedChoice):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ModelVariant(_ClosedChoice):
    AUTO = "auto"
    SMALL = "small"
    MEDIUM = "medium"


class SafetyPolicy(_ClosedChoice):
    DEFAULT = "default"
    PERMISSIVE = "permissive"

    @classmethod
    def for_guardrails(cls, enabled: bool) -> SafetyPolicy:
        return cls.DEFAULT if enabled else cls.PERMISSIVE


class FinishReason(_ClosedChoice):
    STOP = "stop"
    LENGTH = "length"
    SAFETY = "safety"
    CANCEL = "cancel"
    ERROR = "error"


@dataclass(frozen=True)
class Message:
    """One immutable chat turn."""

    role: Role
    text: str
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now_iso)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role.parse(self.role))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
        }


@dataclass
class ChatThread:
    """A titled chat with its own style preset, guardrails flag and message history."""

    title: str
    id: str = field(default_factory=new_id)
    style: StylePreset = StylePreset.BALANCED
    guardrails: bool = True
    messages: list[Message] = field(default_factory=list)
    turn_count: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = ""

    def __post_init__(self) -> None:
        self.style = StylePreset.parse(self.style)
        if not self.updated_at:
            self.updated_at = self.created_at

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.touch()

    def clear_history(self) -> None:
        """Drop all messages; identity, title and counters are kept."""
        self.messages.clear()
        self.touch()


@dataclass(frozen=True)
class GenerationOptions:
    """Concrete sampling parameters for one generation. ``None`` means backend default."""

    system_prompt: str = ""
    temperature: float | None = None
    top_p: float | None = None
    model_variant: ModelVariant = ModelVariant.AUTO
    safety_policy: SafetyPolicy = SafetyPolicy.DEFAULT
    max_response_tokens: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "model_variant", ModelVariant.parse(self.model_variant))
        object.__setattr__(self, "safety_policy", SafetyPolicy.parse(self.safety_policy))
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(f"temperature must be within 0.0-2.0, got {self.temperature}")
        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            raise ConfigurationError(f"top_p must be within 0.0-1.0, got {self.top_p}")
        if self.max_response_tokens is not None and self.max_response_tokens <= 0:
            raise ConfigurationError("max_response_tokens must be > 0")


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.prompt_tokens is None or self.completion_tokens is None:
            return None
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class SafetyFinding:
    """Coarse safety-filter outcome; policy internals are not exposed."""

    category: str
    blocked: bool = True


@dataclass(frozen=True)
class FailureCause:
    kind: ErrorKind
    message: str
    exception_type: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, kind: ErrorKind | None = None) -> FailureCause:
        resolved = kind or getattr(exc, "kind", ErrorKind.GENERIC_FAILURE)
        return cls(
            kind=resolved,
            message=str(exc) or type(exc).__name__,
            exception_type=type(exc).__name__,
        )


@dataclass(frozen=True)
class GenerationResult:
    """Terminal outcome of one Session, produced exactly once."""

    text: str
    finish_reason: FinishReason
    usage: TokenUsage | None = None
    latency_s: float | None = None
    safety_findings: tuple[SafetyFinding, ...] = ()
    error: FailureCause | None = None

    @property
    def ok(self) -> bool:
        return self.finish_reason in (FinishReason.STOP, FinishReason.LENGTH, FinishReason.SAFETY)

    @classmethod
    def failed(cls, cause: FailureCause, *, latency_s: float | None = None) -> GenerationResult:
        reason = FinishReason.CANCEL if cause.kind is ErrorKind.CANCELLED else FinishReason.ERROR
        return cls(text="", finish_reason=reason, latency_s=latency_s, error=cause)
