"""Configuration system for voxflow.

Supports loading from YAML files, dicts, or programmatic construction
via Pydantic models. The config drives adapter selection per stage, stage
timeouts and retries, interruption, and history/buffer bounds.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from voxflow.core.events import Stage


class StageConfig(BaseModel):
    """Configuration for one pipeline stage.

    Args:
        adapter: Preferred adapter name; empty picks the highest priority.
        enabled: Optional stages (VAD, TTS) can be switched off.
        priority: If set, re-ranks the named adapter in the registry.
        timeout_ms: Per-call timeout; 0 disables it.
        retryable: Allow one retry of failures the adapter marks transient.
        options: Adapter-specific options passed to ``initialize``.
        fallback_options: Options for other adapters of the stage, by name,
            used when the pipeline falls back to them.
    """

    adapter: str = ""
    enabled: bool = True
    priority: int | None = None
    timeout_ms: float = 10000.0
    retryable: bool = True
    options: dict[str, Any] = Field(default_factory=dict)
    fallback_options: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def options_for(self, name: str, primary: str) -> dict[str, Any]:
        """Options for adapter ``name`` given the stage's primary adapter."""
        if name in self.fallback_options:
            return dict(self.fallback_options[name])
        return dict(self.options) if name == primary else {}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class PipelineSettings(BaseModel):
    """Top-level voxflow configuration.

    Examples:
        # Programmatic
        settings = PipelineSettings(
            stt=StageConfig(adapter="deepgram", options={"api_key": "..."}),
            llm=StageConfig(adapter="openai", options={"api_key": "..."}),
            tts=StageConfig(enabled=False),
            interruption_enabled=True,
        )

        # From YAML
        settings = PipelineSettings.from_yaml("voxflow.yaml")

        # Shorthand
        settings = PipelineSettings.from_dict({
            "stt_adapter": "deepgram",
            "llm_adapter": "openai",
            "log_level": "DEBUG",
        })
    """

    vad: StageConfig = Field(
        default_factory=lambda: StageConfig(timeout_ms=1000.0, retryable=False)
    )
    stt: StageConfig = Field(default_factory=lambda: StageConfig(timeout_ms=15000.0))
    llm: StageConfig = Field(default_factory=lambda: StageConfig(timeout_ms=30000.0))
    tts: StageConfig = Field(default_factory=lambda: StageConfig(timeout_ms=15000.0))

    interruption_enabled: bool = False
    history_max_turns: int = Field(default=50, ge=1)
    prompt_history_turns: int = Field(default=10, ge=0)
    max_context_chars: int = Field(default=32000, gt=0)
    system_prompt: str = ""
    max_buffer_duration_ms: float = Field(default=30000.0, gt=0)
    retry_backoff_ms: float = Field(default=200.0, ge=0)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _mandatory_stages_enabled(self) -> PipelineSettings:
        for stage in (Stage.STT, Stage.LLM):
            if not self.stage(stage).enabled:
                raise ValueError(f"The {stage.value.upper()} stage cannot be disabled")
        return self

    def stage(self, stage: Stage) -> StageConfig:
        """Config block for a stage."""
        return getattr(self, stage.value)

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineSettings:
        """Load configuration from a YAML file."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineSettings:
        """Load configuration from a dictionary.

        Supports both the nested format and a flat shorthand:

        Nested:
            {"stt": {"adapter": "deepgram"}, "logging": {"level": "DEBUG"}}

        Shorthand:
            {"stt_adapter": "deepgram", "tts_enabled": False, "log_level": "DEBUG"}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> PipelineSettings:
        """Normalize and construct settings from a raw dict."""
        # A bare string selects the adapter: {"stt": "deepgram"}
        for stage in Stage:
            if isinstance(data.get(stage.value), str):
                data[stage.value] = {"adapter": data[stage.value]}

        flat_mappings: dict[str, tuple[str, str]] = {"log_level": ("logging", "level")}
        for stage in Stage:
            for key in ("adapter", "enabled", "timeout_ms", "retryable", "priority"):
                flat_mappings[f"{stage.value}_{key}"] = (stage.value, key)

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data:
                if section not in data:
                    data[section] = {}
                data[section][nested_key] = data.pop(flat_key)

        return cls(**data)


def load_config(
    source: str | Path | dict[str, Any] | PipelineSettings | None = None,
) -> PipelineSettings:
    """Load PipelineSettings from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing
            PipelineSettings, or None for defaults.
    """
    if source is None:
        return PipelineSettings()
    if isinstance(source, PipelineSettings):
        return source
    if isinstance(source, dict):
        return PipelineSettings.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if path.suffix not in (".yaml", ".yml"):
            raise ValueError(f"Expected a .yaml/.yml config file, got: {path}")
        return PipelineSettings.from_yaml(path)
    raise TypeError(f"Cannot load config from {type(source)}")


# Annotated reference configuration
DEFAULT_CONFIG_YAML = """\
# voxflow pipeline configuration

vad:
  adapter: energy       # empty = highest-priority registered VAD
  enabled: true         # false = push-to-talk (call end_speech())
  timeout_ms: 1000
  retryable: false
  options:
    energy_threshold: 0.022

stt:
  adapter: deepgram
  timeout_ms: 15000
  options:
    api_key: YOUR_DEEPGRAM_KEY

llm:
  adapter: openai
  timeout_ms: 30000
  retryable: true       # retry once on transient (network/rate limit) errors
  options:
    api_key: YOUR_OPENAI_KEY
    model: gpt-4o-mini

tts:
  adapter: elevenlabs
  enabled: true         # false = text-only responses
  timeout_ms: 15000
  options:
    api_key: YOUR_ELEVENLABS_KEY

interruption_enabled: false   # barge-in
history_max_turns: 50
prompt_history_turns: 10
max_context_chars: 32000
max_buffer_duration_ms: 30000
retry_backoff_ms: 200
system_prompt: "You are a helpful voice assistant. Keep answers short."

logging:
  level: INFO
"""
