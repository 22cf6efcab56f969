"""Style preset → GenerationOptions resolution."""

from __future__ import annotations

import dataclasses
from types import MappingProxyType
from typing import Any, Mapping

from .exceptions import ConfigurationError
from .models import GenerationOptions, SafetyPolicy, StylePreset

# Fields absent from a row fall back to the backend default (None).
PRESET_TABLE: Mapping[StylePreset, Mapping[str, float | None]] = MappingProxyType(
    {
        StylePreset.CREATIVE: MappingProxyType({"temperature": 0.9, "top_p": None}),
        StylePreset.BALANCED: MappingProxyType({"temperature": None, "top_p": None}),
        StylePreset.PRECISE: MappingProxyType({"temperature": 0.25, "top_p": None}),
    }
)

_OVERRIDABLE = frozenset(f.name for f in dataclasses.fields(GenerationOptions))


def resolve_options(
    preset: StylePreset | str,
    overrides: Mapping[str, Any] | None = None,
    *,
    system_prompt: str = "",
    guardrails: bool = True,
) -> GenerationOptions:
    """Derive GenerationOptions from a stored style preset.

    Explicit ``overrides`` win field-by-field over preset-derived values; an
    explicit ``None`` restores the backend default for that field.

    Raises:
        ConfigurationError: unknown preset, unknown override key, or a value
            outside its allowed range.
    """
    style = StylePreset.parse(preset)
    values: dict[str, Any] = {
        "system_prompt": system_prompt,
        "safety_policy": SafetyPolicy.for_guardrails(guardrails),
        **PRESET_TABLE[style],
    }
    if overrides:
        unknown = sorted(set(overrides) - _OVERRIDABLE)
        if unknown:
            raise ConfigurationError(f"Unknown generation option(s): {', '.join(unknown)}")
        values.update(overrides)
    return GenerationOptions(**values)
