"""Runtime settings from environment variables, plus logging setup."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigurationError
from .orchestrator import SYSTEM_INSTRUCTIONS
from .session import DEFAULT_MAX_PROMPT_CHARS

logger = logging.getLogger("ezllm")

DB_FILENAME = "chat_history.sqlite3"
ENV_PREFIX = "EZLLM_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def default_db_path() -> Path:
    return Path.home() / ".ezllm" / DB_FILENAME


def resolve_log_level(level: str | int, fallback: int = logging.WARNING) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        if level.isdigit():
            return int(level)
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    logger.warning(
        "[EzLLM] Unsupported log level '%s'; falling back to %s.",
        level,
        logging.getLevelName(fallback),
    )
    return fallback


def configure_logging(level: str | int = "warning") -> None:
    """Attach a stderr handler to the ``ezllm`` logger at ``level``."""
    root = logging.getLogger("ezllm")
    root.setLevel(resolve_log_level(level))
    if not any(getattr(h, "_ezllm_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._ezllm_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean (1/0, true/false), got '{raw}'")


def _parse_positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    backend: str = "apple"
    db_path: Path = field(default_factory=default_db_path)
    log_level: str = "warning"
    max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS
    system_prompt: str = SYSTEM_INSTRUCTIONS
    log_generations: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``EZLLM_*`` variables; unset ones keep their defaults.

        Raises:
            ConfigurationError: a variable is present but malformed.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        if (raw := env.get(f"{ENV_PREFIX}BACKEND")) is not None:
            values["backend"] = raw.strip().lower()
        if (raw := env.get(f"{ENV_PREFIX}DB_PATH")) is not None:
            values["db_path"] = Path(raw).expanduser()
        if (raw := env.get(f"{ENV_PREFIX}LOG_LEVEL")) is not None:
            values["log_level"] = raw.strip().lower()
        if (raw := env.get(f"{ENV_PREFIX}MAX_PROMPT_CHARS")) is not None:
            values["max_prompt_chars"] = _parse_positive_int(f"{ENV_PREFIX}MAX_PROMPT_CHARS", raw)
        if (raw := env.get(f"{ENV_PREFIX}SYSTEM_PROMPT")) is not None:
            values["system_prompt"] = raw
        if (raw := env.get(f"{ENV_PREFIX}LOG_GENERATIONS")) is not None:
            values["log_generations"] = _parse_bool(f"{ENV_PREFIX}LOG_GENERATIONS", raw)

        return cls(**values)  # type: ignore[arg-type]
