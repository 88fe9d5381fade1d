"""
Generation configuration and model limit resolution.

Single source of truth for the thresholds that gate document acceptance and
for the knobs that size the pipeline (concurrency ceiling, refinement pass,
output language). Values come from the environment (optionally a ``.env``
file) and are frozen into a ``GenerationConfig`` that is built once and
passed explicitly to every component that needs it.

Malformed numeric environment values are ignored with a warning and the
default kept, so one typo in a deployment file never takes the worker down.
Structurally invalid values (a concurrency ceiling below one, an inverted
script range) raise ``ConfigError``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable

from dotenv import load_dotenv

from errors import ConfigError

logger = logging.getLogger("docforge.agent.config")

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_MIN_CONTENT_LENGTH = 1000
DEFAULT_MIN_QUALITY_SCORE = 60.0
DEFAULT_MIN_NATIVE_RATIO = 0.3
# CJK Unified Ideographs
DEFAULT_NATIVE_SCRIPT_RANGE = (0x4E00, 0x9FFF)

DEFAULT_EXCLUDED_FILES: tuple[str, ...] = (
    "*.lock", "package-lock.json", "*.min.js", "*.map", "*.png", "*.jpg",
    "*.jpeg", "*.gif", "*.ico", "*.svg", "*.woff", "*.woff2", "*.ttf",
    "*.pdf", "*.zip", "*.exe", "*.dll", "*.so", "*.pyc",
)
DEFAULT_EXCLUDED_FOLDERS: tuple[str, ...] = (
    "node_modules/", "bin/", "obj/", "dist/", "build/", "target/",
    "__pycache__/", "venv/", ".venv/", "vendor/",
)


@dataclass(frozen=True)
class GenerationConfig:
    """Immutable thresholds and knobs for one pipeline run."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    min_content_length: int = DEFAULT_MIN_CONTENT_LENGTH
    min_quality_score: float = DEFAULT_MIN_QUALITY_SCORE
    min_native_ratio: float = DEFAULT_MIN_NATIVE_RATIO
    native_script_range: tuple[int, int] = DEFAULT_NATIVE_SCRIPT_RANGE
    refine_enabled: bool = False
    language: str = "Chinese"

    chat_model: str = ""
    analysis_model: str = ""
    llm_base_url: str = ""
    llm_api_key: str = ""

    excluded_files: tuple[str, ...] = DEFAULT_EXCLUDED_FILES
    excluded_folders: tuple[str, ...] = DEFAULT_EXCLUDED_FOLDERS

    # Additional litellm.completion() kwargs (e.g. extra_body for a provider)
    extra_llm_kwargs: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.min_content_length < 0:
            raise ConfigError(f"min_content_length must be >= 0, got {self.min_content_length}")
        if not 0.0 <= self.min_native_ratio <= 1.0:
            raise ConfigError(f"min_native_ratio must be within [0, 1], got {self.min_native_ratio}")
        low, high = self.native_script_range
        if low > high:
            raise ConfigError(f"native_script_range is inverted: {low:#x} > {high:#x}")

    def __str__(self) -> str:
        parts = [
            f"concurrency={self.max_concurrency}",
            f"min_len={self.min_content_length:,}",
            f"min_score={self.min_quality_score:g}",
            f"min_ratio={self.min_native_ratio:g}",
            f"refine={'yes' if self.refine_enabled else 'no'}",
        ]
        if self.chat_model:
            parts.append(f"chat={self.chat_model}")
        if self.analysis_model:
            parts.append(f"analysis={self.analysis_model}")
        return " ".join(parts)

    @property
    def catalogue_model(self) -> str:
        """Model used for outline synthesis, falling back to the chat model."""
        return self.analysis_model or self.chat_model

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None, *, dotenv: bool = True) -> "GenerationConfig":
        """Build a config from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests pass a dict).
            dotenv: Load a ``.env`` file into the process environment first.
        """
        if env is None:
            if dotenv:
                load_dotenv()
            env = dict(os.environ)

        def _get(name: str) -> str:
            return (env.get(name) or "").strip()

        return cls(
            max_concurrency=_parse(_get("TASK_MAX_SIZE_PER_USER"), int, DEFAULT_MAX_CONCURRENCY, "TASK_MAX_SIZE_PER_USER"),
            min_content_length=_parse(_get("DOC_MIN_CONTENT_LENGTH"), int, DEFAULT_MIN_CONTENT_LENGTH, "DOC_MIN_CONTENT_LENGTH"),
            min_quality_score=_parse(_get("DOC_MIN_QUALITY_SCORE"), float, DEFAULT_MIN_QUALITY_SCORE, "DOC_MIN_QUALITY_SCORE"),
            min_native_ratio=_parse(_get("DOC_MIN_NATIVE_RATIO"), float, DEFAULT_MIN_NATIVE_RATIO, "DOC_MIN_NATIVE_RATIO"),
            native_script_range=_parse(
                _get("DOC_NATIVE_SCRIPT_RANGE"), parse_script_range,
                DEFAULT_NATIVE_SCRIPT_RANGE, "DOC_NATIVE_SCRIPT_RANGE",
            ),
            refine_enabled=_get("REFINE_AND_ENHANCE_QUALITY").lower() in ("1", "true", "yes", "on"),
            language=_get("DOC_LANGUAGE") or "Chinese",
            chat_model=_get("CHAT_MODEL"),
            analysis_model=_get("ANALYSIS_MODEL"),
            llm_base_url=_get("LLM_BASE_URL"),
            llm_api_key=_get("LLM_API_KEY") or _get("OPENAI_API_KEY"),
        )


def parse_script_range(value: str) -> tuple[int, int]:
    """Parse ``"4e00-9fff"`` into a pair of code points."""
    low, sep, high = value.partition("-")
    if not sep:
        raise ValueError(f"expected LOW-HIGH hex range, got {value!r}")
    return int(low, 16), int(high, 16)


def _parse(raw: str, convert: Callable[[str], Any], default: Any, name: str) -> Any:
    if not raw:
        return default
    try:
        return convert(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using default %r", name, raw, default)
        return default


# ──────────────────────────────────────────────────────────────────────
# Completion caps per model. Providers reject requests whose max_tokens
# exceed their limit, and several report wrong limits to litellm, so the
# known ones are pinned here. Unknown models get None (provider default).
# ──────────────────────────────────────────────────────────────────────

MODEL_MAX_TOKENS: dict[str, int | None] = {
    "deepseek-chat": 8192,
    "DeepSeek-V3": 16384,
    "QwQ-32B": 8192,
    "gpt-4.1-mini": 32768,
    "gpt-4.1": 32768,
    "gpt-4o": 16384,
    "o4-mini": 32768,
    "o3-mini": 32768,
    "doubao-1-5-pro-256k-250115": 256000,
    "Qwen/Qwen3-235B-A22B": None,
    "grok-3": 65536,
    "qwen2.5-coder-3b-instruct": 65535,
    "qwen3-235b-a22b": 16384,
    "claude-sonnet-4-20250514": 63999,
    "gemini-2.5-pro": 32768,
    "gemini-2.5-flash": 32768,
    "Qwen3-32B": 32768,
    "glm-4.5": 32768,
    "zai-org/glm-4.5": 32768,
    "glm-4.5v": 32768,
    "deepseek-r1:32b-qwen-distill-fp16": 32768,
}

# Checked in order before the exact table; first matching prefix wins.
_PREFIX_MAX_TOKENS: tuple[tuple[str, int], ...] = (
    ("kimi-k2-250711", 32768),
    ("kimi-k2", 128000),
    ("deepseek-r1", 32768),
    ("minimax-m1", 40000),
    ("qwen/qwen3-next-80b-a3b-instruct", 32768),
)


def _strip_provider_prefix(model: str) -> str:
    """Strip litellm routing prefixes like 'openai/' or 'openrouter/'.

    Examples:
        'openrouter/moonshotai/kimi-k2' → 'moonshotai/kimi-k2'
        'openai/gpt-4o'                 → 'gpt-4o'
    """
    for prefix in ("openrouter/", "openai/", "ollama/", "ollama_chat/", "litellm_proxy/", "hosted_vllm/"):
        if model.startswith(prefix):
            return model[len(prefix):]
    return model


def resolve_max_tokens(model: str) -> int | None:
    """Return the completion token cap for *model*, or None if unknown."""
    bare = _strip_provider_prefix(model)
    lowered = bare.lower()
    for prefix, limit in _PREFIX_MAX_TOKENS:
        if lowered.startswith(prefix):
            return limit
    if bare in MODEL_MAX_TOKENS:
        return MODEL_MAX_TOKENS[bare]
    if bare.startswith("o"):
        return 65535
    return None
