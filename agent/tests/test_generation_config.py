"""Tests for environment-driven configuration and model token caps."""

import pytest

from errors import ConfigError
from generation_config import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MIN_CONTENT_LENGTH,
    GenerationConfig,
    parse_script_range,
    resolve_max_tokens,
)


class TestFromEnv:
    def test_defaults_from_empty_env(self):
        config = GenerationConfig.from_env({})
        assert config.max_concurrency == DEFAULT_MAX_CONCURRENCY
        assert config.min_content_length == DEFAULT_MIN_CONTENT_LENGTH
        assert config.min_quality_score == 60.0
        assert config.min_native_ratio == 0.3
        assert config.native_script_range == (0x4E00, 0x9FFF)
        assert not config.refine_enabled
        assert config.language == "Chinese"

    def test_reads_every_knob(self):
        config = GenerationConfig.from_env({
            "TASK_MAX_SIZE_PER_USER": "5",
            "DOC_MIN_CONTENT_LENGTH": "2000",
            "DOC_MIN_QUALITY_SCORE": "75.5",
            "DOC_MIN_NATIVE_RATIO": "0.5",
            "DOC_NATIVE_SCRIPT_RANGE": "3040-30ff",
            "REFINE_AND_ENHANCE_QUALITY": "true",
            "DOC_LANGUAGE": "Japanese",
            "CHAT_MODEL": "openai/gpt-4.1",
            "ANALYSIS_MODEL": "openai/o4-mini",
            "LLM_BASE_URL": "http://localhost:4000",
            "OPENAI_API_KEY": "sk-test",
        })
        assert config.max_concurrency == 5
        assert config.min_content_length == 2000
        assert config.min_quality_score == 75.5
        assert config.min_native_ratio == 0.5
        assert config.native_script_range == (0x3040, 0x30FF)
        assert config.refine_enabled
        assert config.language == "Japanese"
        assert config.catalogue_model == "openai/o4-mini"
        assert config.llm_api_key == "sk-test"

    def test_malformed_numbers_keep_defaults(self):
        config = GenerationConfig.from_env({
            "TASK_MAX_SIZE_PER_USER": "lots",
            "DOC_MIN_QUALITY_SCORE": "high",
            "DOC_NATIVE_SCRIPT_RANGE": "cjk",
        })
        assert config.max_concurrency == DEFAULT_MAX_CONCURRENCY
        assert config.min_quality_score == 60.0
        assert config.native_script_range == (0x4E00, 0x9FFF)

    def test_zero_concurrency_is_invalid(self):
        with pytest.raises(ConfigError):
            GenerationConfig.from_env({"TASK_MAX_SIZE_PER_USER": "0"})

    def test_inverted_range_is_invalid(self):
        with pytest.raises(ConfigError):
            GenerationConfig(native_script_range=(0x9FFF, 0x4E00))

    def test_ratio_out_of_bounds(self):
        with pytest.raises(ConfigError):
            GenerationConfig(min_native_ratio=1.5)

    def test_catalogue_model_falls_back_to_chat_model(self):
        assert GenerationConfig(chat_model="gpt-4o").catalogue_model == "gpt-4o"

    def test_str_is_compact(self):
        text = str(GenerationConfig(chat_model="gpt-4o"))
        assert "concurrency=3" in text
        assert "chat=gpt-4o" in text
        assert "sk-" not in text


class TestParseScriptRange:
    def test_hex_pair(self):
        assert parse_script_range("4e00-9fff") == (0x4E00, 0x9FFF)

    def test_missing_separator(self):
        with pytest.raises(ValueError):
            parse_script_range("4e00")


class TestResolveMaxTokens:
    @pytest.mark.parametrize("model,expected", [
        ("gpt-4o", 16384),
        ("openai/gpt-4.1", 32768),
        ("openrouter/moonshotai/kimi-k2", None),
        ("kimi-k2-250711", 32768),
        ("kimi-k2-0905", 128000),
        ("DeepSeek-R1-Distill", 32768),
        ("o1-preview", 65535),
        ("Qwen/Qwen3-235B-A22B", None),
        ("some-unknown-model", None),
    ])
    def test_known_and_unknown_models(self, model, expected):
        assert resolve_max_tokens(model) == expected
