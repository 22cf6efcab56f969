"""
EzLLM: streaming, cancellable chat on an on-device language model.

Backends are imported on demand, so ``import ezllm`` works on machines without
the Apple Foundation Models SDK.
"""

from .exceptions import (
    AppleFMSetupError,
    ConfigurationError,
    ErrorKind,
    EzLLMError,
    GenerationCancelled,
    GenericFailure,
    InputTooLong,
    InvalidState,
    ProviderUnavailable,
    ResponseTruncated,
    SafetyBlocked,
    ThreadBusy,
    UnknownThread,
)
from .models import (
    ChatThread,
    FailureCause,
    FinishReason,
    GenerationOptions,
    GenerationResult,
    Message,
    ModelVariant,
    Role,
    SafetyFinding,
    SafetyPolicy,
    StylePreset,
    TokenUsage,
)
from .options import PRESET_TABLE, resolve_options
from .orchestrator import ChatOrchestrator
from .provider import Provider, create_provider
from .session import Session, SessionConfig, SessionState, build_prompt
from .store import ChatStore

__version__ = "0.1.0"

__all__ = [
    "PRESET_TABLE",
    "AppleFMSetupError",
    "ChatOrchestrator",
    "ChatStore",
    "ChatThread",
    "ConfigurationError",
    "ErrorKind",
    "EzLLMError",
    "FailureCause",
    "FinishReason",
    "GenerationCancelled",
    "GenerationOptions",
    "GenerationResult",
    "GenericFailure",
    "InputTooLong",
    "InvalidState",
    "Message",
    "ModelVariant",
    "Provider",
    "ProviderUnavailable",
    "ResponseTruncated",
    "Role",
    "SafetyBlocked",
    "SafetyFinding",
    "SafetyPolicy",
    "Session",
    "SessionConfig",
    "SessionState",
    "StylePreset",
    "ThreadBusy",
    "TokenUsage",
    "UnknownThread",
    "build_prompt",
    "create_provider",
    "resolve_options",
]
