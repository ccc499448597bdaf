"""Pydantic models for termpilot configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONTEXT_WINDOW = 32768

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_API_KEY_ENV = "ANTHROPIC_API_KEY"

# Hermes / Qwen style tool-call opener; ``{name}`` is replaced by the tool prefix.
DEFAULT_PREFILL_TEMPLATE = '<tool_call>\n{"name": "{name}'


class ThinkingParams(BaseModel):
    """Extra request-body keys toggling a model's reasoning mode."""

    enabled: dict[str, Any] = Field(default_factory=dict, description="Body keys when thinking is on")
    disabled: dict[str, Any] = Field(default_factory=dict, description="Body keys when thinking is off")


class ModelConfig(BaseModel):
    """Configuration for the remote model endpoint."""

    name: str = Field(default="gpt-4o-mini", description="Model id sent on the wire")
    protocol: Literal["openai", "anthropic"] = Field(default="openai", description="Wire protocol")
    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    api_key: str = Field(default="", description="API key (falls back to api_key_env)")
    api_key_env: str = Field(default="OPENAI_API_KEY", description="Env var holding the API key")
    context_window: int = Field(default=DEFAULT_CONTEXT_WINDOW, description="Context window in tokens")
    max_tokens: int | None = Field(default=None, description="Maximum tokens for a response")
    temperature: float | None = Field(default=None, description="Generation temperature")

    supports_tools: bool = Field(default=True, description="Model accepts a tools array")
    supports_tool_choice: bool = Field(default=True, description="Model honours a forced tool_choice")
    supports_prefill: bool = Field(default=False, description="Model continues a partial assistant message")
    prefill_template: str = Field(default=DEFAULT_PREFILL_TEMPLATE, description="Prefill opener")

    supports_thinking: bool = Field(default=False, description="Model has a reasoning toggle")
    thinking_enabled: bool = Field(default=False, description="Turn reasoning on")
    thinking_params: ThinkingParams = Field(default_factory=ThinkingParams)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("context_window")
    @classmethod
    def positive_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("context_window must be positive")
        return v

    @model_validator(mode="after")
    def anthropic_defaults(self) -> "ModelConfig":
        """Point unset endpoint and key settings at Anthropic for that protocol."""
        if self.protocol == "anthropic":
            if "base_url" not in self.model_fields_set:
                self.base_url = ANTHROPIC_BASE_URL
            if "api_key_env" not in self.model_fields_set:
                self.api_key_env = ANTHROPIC_API_KEY_ENV
        return self

    def get_api_key(self) -> str:
        """Get the API key from config or the environment."""
        if self.api_key:
            return self.api_key
        key = os.environ.get(self.api_key_env)
        if key:
            return key
        raise ValueError(
            f"No API key found for model {self.name}. "
            f"Set {self.api_key_env} or model.api_key in the config file."
        )


class SessionConfig(BaseModel):
    """Context-window accounting thresholds."""

    reserve_ratio: float = Field(default=0.0, ge=0.0, lt=1.0, description="Share of window held back")
    compact_threshold: float = Field(default=0.85, gt=0.0, le=1.0, description="Compaction trigger")
    near_limit_threshold: float = Field(default=0.8, description="Status 'near limit' mark")
    full_threshold: float = Field(default=0.95, description="Status 'full' mark")


class RetryConfig(BaseModel):
    """Configuration for retry logic."""

    max_attempts: int = Field(default=3, ge=1, description="Maximum attempts for non-streaming calls")
    base_delay: float = Field(default=1.0, ge=0.0, description="Base delay in seconds")
    max_delay: float = Field(default=60.0, description="Maximum delay in seconds")


class StreamConfig(BaseModel):
    """Timeouts for streaming requests."""

    connect_timeout: float = Field(default=30.0, gt=0, description="Seconds until the first byte")
    activity_timeout: float = Field(default=120.0, gt=0, description="Max idle seconds between chunks")


class ToolsConfig(BaseModel):
    """Configuration for tool dispatch."""

    enabled: bool = Field(default=True, description="Expose tools to the model")
    max_tool_rounds: int = Field(default=40, ge=1, description="Model rounds per turn")
    command_timeout: int = Field(default=120, description="Tool command timeout in seconds")
    max_concurrent: int = Field(default=4, ge=1, description="Parallel tool executions per round")
    filter_schema: bool = Field(default=False, description="Always send only allowed tools")


class PathsConfig(BaseModel):
    """Configuration for file paths."""

    cwd: str = Field(default="", validate_default=True, description="Working directory")
    data_dir: str = Field(default="", validate_default=True, description="Sessions and logs directory")

    @field_validator("cwd", mode="before")
    @classmethod
    def resolve_cwd(cls, v: str) -> str:
        """Resolve empty cwd to current directory."""
        if not v:
            return os.getcwd()
        return str(Path(v).resolve())

    @field_validator("data_dir", mode="before")
    @classmethod
    def resolve_data_dir(cls, v: str) -> str:
        if not v:
            return str(Path.home() / ".termpilot")
        return str(Path(v).expanduser().resolve())


class AppConfig(BaseModel):
    """Main configuration for termpilot."""

    system_prompt: str = Field(default="", description="Custom system prompt")
    log_level: str = Field(default="WARNING", description="Logging level")

    model: ModelConfig = Field(default_factory=ModelConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @property
    def working_directory(self) -> Path:
        """Get the working directory as a Path object."""
        return Path(self.paths.cwd or os.getcwd())

    @property
    def sessions_directory(self) -> Path:
        return Path(self.paths.data_dir) / "sessions"
