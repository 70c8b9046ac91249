"""Configuration models and loaders for modellkoppler.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "modellkoppler/config.yaml"
DEFAULT_SYSTEM_PROMPT = "你是一个多模态AI助手，擅长分析媒体内容。"

ProviderName = Literal["multimodal", "reasoning"]


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class ProviderConfig(BaseModel):
    """Connection settings for one OpenAI-compatible chat provider."""

    base_url: str
    api_key: str | None = None
    model: str
    timeout_seconds: float = 60.0

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return value

    def has_credentials(self) -> bool:
        return bool((self.api_key or "").strip())


def _default_multimodal() -> ProviderConfig:
    return ProviderConfig(
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        model="qwen-omni-turbo",
        timeout_seconds=300.0,
    )


def _default_reasoning() -> ProviderConfig:
    return ProviderConfig(
        base_url="https://api.deepseek.com",
        model="deepseek-reasoner",
        timeout_seconds=60.0,
    )


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:3000"

    multimodal: ProviderConfig = Field(default_factory=_default_multimodal)
    reasoning: ProviderConfig = Field(default_factory=_default_reasoning)

    title_model: str = "deepseek-chat"
    title_timeout_seconds: float = 30.0
    deep_analysis: bool = False
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    audio_size_warning_chars: int | None = None
    stream_keepalive_seconds: float | None = None
    logging: LoggingConfig | None = None

    @model_validator(mode="before")
    @classmethod
    def _fill_provider_defaults(cls, data: Any) -> Any:
        """Merge partial provider sections onto the built-in provider defaults."""
        if not isinstance(data, dict):
            return data
        mapped = dict(data)
        for name, factory in (("multimodal", _default_multimodal), ("reasoning", _default_reasoning)):
            section = mapped.get(name)
            if section is None:
                mapped.pop(name, None)
                continue
            if isinstance(section, dict):
                mapped[name] = {**factory().model_dump(), **section}
        return mapped

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "RelayConfig":
        """Validate that service_base_url includes host and port."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:3000")
        if self.audio_size_warning_chars is None:
            self.audio_size_warning_chars = 100_000
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 0.0
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("audio_size_warning_chars")
    @classmethod
    def _validate_audio_threshold(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("audio_size_warning_chars must be >= 0")
        return value

    def provider(self, name: ProviderName) -> ProviderConfig:
        """Return settings for one named provider."""
        if name == "multimodal":
            return self.multimodal
        if name == "reasoning":
            return self.reasoning
        raise ValueError(f"Unknown provider: {name}")


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


_ENV_MAP = {
    "service_base_url": "MODELLKOPPLER_SERVICE_BASE_URL",
    "multimodal.api_key": "DASHSCOPE_API_KEY",
    "multimodal.base_url": "MODELLKOPPLER_MULTIMODAL_BASE_URL",
    "multimodal.model": "MODELLKOPPLER_MULTIMODAL_MODEL",
    "reasoning.api_key": "DEEPSEEK_API_KEY",
    "reasoning.base_url": "MODELLKOPPLER_REASONING_BASE_URL",
    "reasoning.model": "DEEPSEEK_REASONER_MODEL",
    "title_model": "DEEPSEEK_CHAT_MODEL",
    "deep_analysis": "USE_DEEPSEEK_FOR_ANALYSIS",
    "audio_size_warning_chars": "MODELLKOPPLER_AUDIO_SIZE_WARNING_CHARS",
    "stream_keepalive_seconds": "MODELLKOPPLER_STREAM_KEEPALIVE_SECONDS",
    "logging.level": "MODELLKOPPLER_LOG_LEVEL",
    "logging.json": "MODELLKOPPLER_LOG_JSON",
}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    out = dict(data)

    for key, env_name in _ENV_MAP.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key == "audio_size_warning_chars":
            parsed: Any = int(value)
        elif key == "stream_keepalive_seconds":
            parsed = float(value)
        elif key in {"deep_analysis", "logging.json"}:
            parsed = _env_flag(value)
        else:
            parsed = value

        section, _, field = key.partition(".")
        if not field:
            out[section] = parsed
            continue
        nested = dict(out.get(section) or {})
        nested[field] = parsed
        out[section] = nested

    return out


def load_config(path: str | None = None) -> RelayConfig:
    """Load, merge, and validate relay configuration."""
    final_path = path or os.getenv("MODELLKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return RelayConfig.model_validate(raw)
