from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_ENV_VAR = "SCALER_CONFIG_PATH"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "scaler_config.yaml"
_UNRESOLVED = re.compile(r"\$\{?[A-Za-z_][A-Za-z0-9_]*\}?")

MetricsSourceLiteral = Literal["static", "file", "http"]


class EvaluationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pass_fraction: float = Field(default=0.8, gt=0, le=1)
    interval_hours: float = Field(default=24.0, gt=0)
    run_on_start: bool = False


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=2, ge=1, le=10)
    base_delay_sec: float = Field(default=1.0, ge=0)
    max_delay_sec: float = Field(default=30.0, ge=0)
    jitter_sec: float = Field(default=0.25, ge=0)
    timeout_sec: float = Field(default=30.0, gt=0)


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_data_dir: str = "user_data"
    state_file: str = "scaling/state.json"
    advisories_file: str = "scaling/advisories.json"
    advisories_keep: int = Field(default=200, ge=1)

    def resolve_root(self) -> Path:
        root = Path(self.user_data_dir)
        if not root.is_absolute():
            root = PROJECT_ROOT / root
        return root.resolve()

    def state_path(self) -> Path:
        return self.resolve_root() / self.state_file

    def advisories_path(self) -> Path:
        return self.resolve_root() / self.advisories_file


class CatalogConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str | None = None
    candidates_path: str | None = None


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: MetricsSourceLiteral = "file"
    path: str = "user_data/metrics.json"
    url: str | None = None
    token: str | None = None
    envelope_key: str | None = None
    static: dict[str, float | bool] = Field(default_factory=dict)


class LlmConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.5, ge=0, le=2)
    max_recommendations: int = Field(default=5, ge=1, le=20)


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_enabled: bool = True
    telegram_enabled: bool = False
    bot_token: str | None = None
    chat_id: str | None = None
    webhook_url: str | None = None


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    admin_token: str | None = None
    start_scheduler: bool = True


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_format: bool = True


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    llm: LlmConfig = Field(default_factory=LlmConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_guardrails(self) -> "EngineConfig":
        if self.retry.max_delay_sec < self.retry.base_delay_sec:
            raise ValueError("retry.max_delay_sec must be >= retry.base_delay_sec")
        if self.metrics.source == "http" and not self.metrics.url:
            raise ValueError("metrics.url is required when metrics.source is http")
        return self


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        expanded = os.path.expandvars(value)
        # an unset ${VAR} placeholder means "not configured"
        if _UNRESOLVED.fullmatch(expanded):
            return None
        return expanded
    return value


def load_config(path: str | Path) -> EngineConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    payload = _expand_env(payload)
    try:
        return EngineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid engine config: {exc}") from exc


def resolve_config(path: str | Path | None = None) -> EngineConfig:
    explicit = path or os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        return load_config(explicit)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return EngineConfig()
