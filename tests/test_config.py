"""Tests for PipelineSettings loading and logging setup."""

import sys

import pytest
import yaml
from loguru import logger
from pydantic import ValidationError

from voxflow.config import (
    DEFAULT_CONFIG_YAML,
    LoggingConfig,
    PipelineSettings,
    StageConfig,
    load_config,
)
from voxflow.core.events import Stage
from voxflow.log import configure_logging


class TestPipelineSettings:

    def test_defaults(self):
        settings = PipelineSettings()
        assert settings.interruption_enabled is False
        assert settings.history_max_turns == 50
        assert settings.vad.retryable is False
        assert settings.stage(Stage.LLM).timeout_ms == 30000.0
        assert settings.logging.level == "INFO"

    def test_nested_dict(self):
        settings = PipelineSettings.from_dict({
            "stt": {"adapter": "deepgram", "options": {"api_key": "k"}},
            "tts": {"enabled": False},
        })
        assert settings.stt.adapter == "deepgram"
        assert settings.stt.options == {"api_key": "k"}
        assert settings.tts.enabled is False

    def test_flat_shorthand(self):
        settings = PipelineSettings.from_dict({
            "llm_adapter": "openai",
            "llm_timeout_ms": 5000,
            "vad_enabled": False,
            "log_level": "DEBUG",
        })
        assert settings.llm.adapter == "openai"
        assert settings.llm.timeout_ms == 5000.0
        assert settings.vad.enabled is False
        assert settings.logging.level == "DEBUG"

    def test_bare_string_selects_adapter(self):
        settings = PipelineSettings.from_dict({"stt": "deepgram"})
        assert settings.stt.adapter == "deepgram"

    def test_from_dict_leaves_input_untouched(self):
        data = {"stt_adapter": "deepgram"}
        PipelineSettings.from_dict(data)
        assert data == {"stt_adapter": "deepgram"}

    @pytest.mark.parametrize("stage", ["stt", "llm"])
    def test_mandatory_stage_cannot_be_disabled(self, stage):
        with pytest.raises(ValidationError):
            PipelineSettings.from_dict({f"{stage}_enabled": False})

    def test_bounds_validated(self):
        with pytest.raises(ValidationError):
            PipelineSettings(history_max_turns=0)
        with pytest.raises(ValidationError):
            PipelineSettings(max_buffer_duration_ms=0)

    def test_options_for(self):
        config = StageConfig(
            adapter="deepgram",
            options={"api_key": "primary"},
            fallback_options={"whisper": {"model": "base"}},
        )
        assert config.options_for("deepgram", "deepgram") == {"api_key": "primary"}
        assert config.options_for("whisper", "deepgram") == {"model": "base"}
        assert config.options_for("other", "deepgram") == {}


class TestLoadConfig:

    def test_none_gives_defaults(self):
        assert load_config() == PipelineSettings()

    def test_settings_passthrough(self):
        settings = PipelineSettings(system_prompt="hi")
        assert load_config(settings) is settings

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "voxflow.yaml"
        path.write_text("interruption_enabled: true\nstt: deepgram\n")

        settings = load_config(str(path))
        assert settings.interruption_enabled is True
        assert settings.stt.adapter == "deepgram"

    def test_empty_yaml_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == PipelineSettings()

    def test_wrong_suffix(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(tmp_path / "voxflow.json")

    def test_wrong_type(self):
        with pytest.raises(TypeError):
            load_config(42)

    def test_reference_config_parses(self):
        settings = PipelineSettings.from_dict(yaml.safe_load(DEFAULT_CONFIG_YAML))
        assert settings.vad.adapter == "energy"
        assert settings.llm.options["model"] == "gpt-4o-mini"


class TestConfigureLogging:

    def test_level_and_sink(self):
        lines = []
        try:
            configure_logging(LoggingConfig(level="warning"), sink=lines.append, fmt="{message}")
            logger.info("hidden")
            logger.warning("shown")
        finally:
            logger.remove()
            logger.add(sys.stderr)

        assert [line.strip() for line in lines] == ["shown"]
