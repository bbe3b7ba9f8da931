"""Load configuration from YAML and environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from livereply.core.events import ChunkMode, RenderMode, StreamOptions

# Default config lives next to this module
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")
    url: str = "redis://localhost:6379/0"


class TelegramSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore")
    bot_token: str = ""
    api_base: str = "https://api.telegram.org"
    request_timeout: float = 15.0


class StreamSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STREAM_", extra="ignore")
    text_chunk_limit: int = 4000
    chunk_mode: ChunkMode = ChunkMode.LENGTH
    update_interval_ms: int = Field(default=400, ge=0)
    delivered_keys_max: int = 100
    render_mode: RenderMode = RenderMode.AUTO
    typing_interval: float = 4.0

    def to_options(self) -> StreamOptions:
        return StreamOptions(
            text_chunk_limit=self.text_chunk_limit,
            chunk_mode=self.chunk_mode,
            update_interval_ms=self.update_interval_ms,
        )


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")
    level: str = "INFO"
    use_json: bool = True


class Config(BaseSettings):
    """Application config: YAML + env. Secrets from env only."""

    model_config = SettingsConfigDict(env_nested_delimiter="__", extra="ignore")

    redis: RedisSettings = Field(default_factory=RedisSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
        yaml_data = _load_yaml(path)
        env_prefix = os.getenv("LIVEREPLY_ENV_PREFIX", "")
        if env_prefix:
            yaml_data = _deep_merge(yaml_data, _load_yaml(Path(f"config/{env_prefix}.yaml")))
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            yaml_data.setdefault("redis", {})["url"] = redis_url
        token = os.getenv("TELEGRAM_BOT_TOKEN")
        if token:
            yaml_data.setdefault("telegram", {})["bot_token"] = token
        chunk_limit = os.getenv("STREAM_TEXT_CHUNK_LIMIT")
        if chunk_limit:
            yaml_data.setdefault("stream", {})["text_chunk_limit"] = int(chunk_limit)
        chunk_mode = os.getenv("STREAM_CHUNK_MODE")
        if chunk_mode:
            yaml_data.setdefault("stream", {})["chunk_mode"] = chunk_mode.strip().lower()
        return cls(**yaml_data)


def get_config(config_path: str | Path | None = None) -> Config:
    return Config.load(config_path)
