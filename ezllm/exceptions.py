"""Error taxonomy for EzLLM and Apple Foundation Models setup helpers."""

from __future__ import annotations

import importlib
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import SafetyFinding

_INSTALL_HINT = (
    "EzLLM's 'apple' backend requires the Apple Foundation Models SDK "
    "(python-apple-fm-sdk) to be installed manually on a supported Mac.\n"
    "Use the 'scripted' backend (EZLLM_BACKEND=scripted) on other machines."
)


class ErrorKind(str, Enum):
    """Coarse failure categories surfaced to callers."""

    PROVIDER_UNAVAILABLE = "provider_unavailable"
    INVALID_STATE = "invalid_state"
    INPUT_TOO_LONG = "input_too_long"
    SAFETY_BLOCKED = "safety_blocked"
    CANCELLED = "cancelled"
    GENERIC_FAILURE = "generic_failure"


class EzLLMError(Exception):
    """Base class for every error raised by EzLLM."""

    kind: ErrorKind = ErrorKind.GENERIC_FAILURE


class ConfigurationError(EzLLMError, ValueError):
    """A preset, option or setting value is outside its closed set or range."""


class ProviderUnavailable(EzLLMError):
    """The backend cannot run on this device, OS or model installation."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE

    def __init__(self, provider: str, reason: str | None = None) -> None:
        self.provider = provider
        self.reason = reason
        message = f"Provider '{provider}' is not available"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class AppleFMSetupError(ProviderUnavailable):
    """The Apple Foundation Models SDK is missing or its model is not ready."""

    def __init__(self, reason: str, *, context: str | None = None) -> None:
        self.context = context
        super().__init__("apple", reason)

    def __str__(self) -> str:
        prefix = f"[{self.context}] " if self.context else ""
        return f"{prefix}{super().__str__()}\n{_INSTALL_HINT}"


class InvalidState(EzLLMError):
    """An operation was attempted in a state that does not allow it."""

    kind = ErrorKind.INVALID_STATE


class ThreadBusy(InvalidState):
    """A generation is already in flight for the chat thread."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} already has a generation in flight")


class UnknownThread(EzLLMError, KeyError):
    """No chat thread exists with the given id."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(thread_id)

    def __str__(self) -> str:
        return f"Unknown chat thread: {self.thread_id}"


class InputTooLong(EzLLMError):
    """The assembled prompt does not fit the backend's context window."""

    kind = ErrorKind.INPUT_TOO_LONG


class SafetyBlocked(EzLLMError):
    """The backend content policy truncated or blocked the output."""

    kind = ErrorKind.SAFETY_BLOCKED

    def __init__(
        self, message: str = "Blocked by content policy", findings: tuple[SafetyFinding, ...] = ()
    ) -> None:
        self.findings = tuple(findings)
        super().__init__(message)


class ResponseTruncated(EzLLMError):
    """The backend stopped the response at its own length limit."""


class GenerationCancelled(EzLLMError):
    kind = ErrorKind.CANCELLED


class GenericFailure(EzLLMError):
    """Any other backend failure."""


def load_apple_fm(context: str | None = None) -> Any:
    """Import ``apple_fm_sdk`` or raise :class:`AppleFMSetupError`."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError:
        raise AppleFMSetupError("'apple-fm-sdk' is not installed", context=context) from None


def ensure_model_available(model: Any, *, context: str | None = None) -> None:
    """Raise :class:`AppleFMSetupError` unless ``model.is_available()`` reports ready."""
    is_available, reason = model.is_available()
    if not is_available:
        raise AppleFMSetupError(
            f"Foundation Model is not available: {reason or 'unknown reason'}", context=context
        )

