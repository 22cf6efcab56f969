"""Provider interface and backend selection."""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any

from .exceptions import ConfigurationError, ProviderUnavailable
from .session import Session, SessionConfig

logger = logging.getLogger("ezllm.provider")

# name -> "module:ClassName", imported on demand so optional SDKs stay optional.
BACKENDS: dict[str, str] = {
    "apple": "ezllm.backends.apple_fm:AppleFoundationProvider",
    "scripted": "ezllm.backends.scripted:ScriptedProvider",
}


class Provider(ABC):
    """One on-device generation backend: a capability probe plus a Session factory."""

    name = "abstract"

    @abstractmethod
    def is_supported(self) -> bool:
        """Synchronous local capability check. Returns False instead of raising."""

    def unavailable_reason(self) -> str | None:
        """Human-readable reason when :meth:`is_supported` is False."""
        return None

    @abstractmethod
    def _create_session(self, config: SessionConfig) -> Session: ...

    def make_session(self, config: SessionConfig | None = None) -> Session:
        """Build a new, idle Session bound to ``config``. Does no generation work.

        Raises:
            ProviderUnavailable: the backend cannot run on this device.
        """
        if not self.is_supported():
            raise ProviderUnavailable(self.name, self.unavailable_reason())
        session = self._create_session(config or SessionConfig())
        logger.debug("[EzLLM Provider] %s created %r", self.name, session)
        return session

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def create_provider(name: str, **kwargs: Any) -> Provider:
    """Instantiate the backend registered under ``name``."""
    target = BACKENDS.get(name.strip().lower())
    if target is None:
        allowed = ", ".join(sorted(BACKENDS))
        raise ConfigurationError(f"Unknown backend '{name}'; expected one of: {allowed}")
    module_name, _, class_name = target.partition(":")
    provider_cls = getattr(importlib.import_module(module_name), class_name)
    return provider_cls(**kwargs)
