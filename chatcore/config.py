from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatcore.logging import get_logger

logger = get_logger(__name__)


class ProviderName(str, Enum):
    """Upstream model providers reachable over the OpenAI-compatible wire format."""

    OPENAI = "openai"
    XAI = "xai"
    DEEPSEEK = "deepseek"
    TOGETHER = "together"
    CUSTOM = "custom"


# Default endpoints; CUSTOM requires an explicit base url
PROVIDER_BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "xai": "https://api.x.ai/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "together": "https://api.together.xyz/v1",
    "custom": None,
}


class SandboxBackend(str, Enum):
    """Where sandboxed tool code runs."""

    LOCAL = "local"
    REMOTE = "remote"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, validated once at startup."""

    # Storage
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: scripted provider, in-memory counters.",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Providers
    primary_provider: ProviderName = env_field(ProviderName.OPENAI, "PRIMARY_PROVIDER")
    primary_api_key: str | None = env_field(None, "PRIMARY_API_KEY")
    primary_base_url: str | None = env_field(None, "PRIMARY_BASE_URL")
    primary_model: str = env_field("gpt-4o-mini", "PRIMARY_MODEL")
    fallback_provider: ProviderName | None = env_field(None, "FALLBACK_PROVIDER")
    fallback_api_key: str | None = env_field(None, "FALLBACK_API_KEY")
    fallback_base_url: str | None = env_field(None, "FALLBACK_BASE_URL")
    fallback_model: str | None = env_field(None, "FALLBACK_MODEL")
    provider_timeout_seconds: float = env_field(60.0, "PROVIDER_TIMEOUT_SECONDS")

    # Context budget; values are product tuning, not structure
    system_prompt: str = env_field(
        "You are a helpful assistant. Use the available tools when they help answer "
        "the user's request, and say so plainly when you cannot complete a task.",
        "SYSTEM_PROMPT",
    )
    context_window_tokens: int = env_field(128000, "CONTEXT_WINDOW_TOKENS")
    reserved_output_tokens: int = env_field(4096, "RESERVED_OUTPUT_TOKENS")
    memory_token_budget: int = env_field(2000, "MEMORY_TOKEN_BUDGET")
    document_token_budget: int = env_field(6000, "DOCUMENT_TOKEN_BUDGET")
    tool_result_token_limit: int = env_field(4000, "TOOL_RESULT_TOKEN_LIMIT")
    history_message_limit: int = env_field(200, "HISTORY_MESSAGE_LIMIT")
    max_message_chars: int = env_field(100000, "MAX_MESSAGE_CHARS")

    # Tool loop
    max_tool_rounds: int = env_field(8, "MAX_TOOL_ROUNDS")
    tool_timeout_seconds: float = env_field(60.0, "TOOL_TIMEOUT_SECONDS")
    turn_timeout_seconds: float = env_field(300.0, "TURN_TIMEOUT_SECONDS")
    mandatory_tools: List[str] = env_field([], "MANDATORY_TOOLS")

    # Chat rate limit
    chat_rate_limit: int = env_field(60, "CHAT_RATE_LIMIT")
    chat_rate_limit_window_seconds: int = env_field(3600, "CHAT_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_multiplier_free: float = env_field(1.0, "RATE_LIMIT_MULTIPLIER_FREE")
    rate_limit_multiplier_paid: float = env_field(2.0, "RATE_LIMIT_MULTIPLIER_PAID")
    rate_limit_multiplier_enterprise: float = env_field(5.0, "RATE_LIMIT_MULTIPLIER_ENTERPRISE")
    rate_limit_timeout_seconds: float = env_field(2.0, "RATE_LIMIT_TIMEOUT_SECONDS")

    # Sandbox
    sandbox_backend: SandboxBackend = env_field(SandboxBackend.LOCAL, "SANDBOX_BACKEND")
    sandbox_api_url: str | None = env_field(None, "SANDBOX_API_URL")
    sandbox_api_key: str | None = env_field(None, "SANDBOX_API_KEY")
    sandbox_root: str = env_field("/tmp/chatcore-sandboxes", "SANDBOX_ROOT")
    sandbox_idle_timeout_seconds: int = env_field(300, "SANDBOX_IDLE_TIMEOUT_SECONDS")
    sandbox_sweep_interval_seconds: int = env_field(30, "SANDBOX_SWEEP_INTERVAL_SECONDS")
    sandbox_max_memory_mb: int = env_field(512, "SANDBOX_MAX_MEMORY_MB")
    sandbox_max_cpu_seconds: int = env_field(30, "SANDBOX_MAX_CPU_SECONDS")
    sandbox_max_output_bytes: int = env_field(64 * 1024, "SANDBOX_MAX_OUTPUT_BYTES")
    sandbox_jail_binary: str | None = env_field(
        "bwrap",
        "SANDBOX_JAIL_BINARY",
        description="Namespace jail used by the local sandbox backend.",
    )
    sandbox_allow_unjailed_dev: bool = env_field(
        False,
        "SANDBOX_ALLOW_UNJAILED_DEV",
        description="Dev only: run local sandboxes without a jail. Sandboxes can then see each other.",
    )

    # Tool credentials and network policy
    search_api_key: str | None = env_field(None, "SEARCH_API_KEY")
    search_api_url: str = env_field(
        "https://api.search.brave.com/res/v1/web/search", "SEARCH_API_URL"
    )
    image_api_key: str | None = env_field(None, "IMAGE_API_KEY")
    image_model: str = env_field("dall-e-3", "IMAGE_MODEL")
    tool_network_allowlist: List[str] = env_field([], "TOOL_NETWORK_ALLOWLIST")
    tool_network_proxy_url: str | None = env_field(None, "TOOL_NETWORK_PROXY_URL")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("mandatory_tools", "tool_network_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "primary_api_key",
        "fallback_api_key",
        "sandbox_api_key",
        "search_api_key",
        "image_api_key",
        "primary_base_url",
        "fallback_base_url",
        "sandbox_api_url",
        "tool_network_proxy_url",
        "sandbox_jail_binary",
        "fallback_model",
        "fallback_provider",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "context_window_tokens",
        "max_tool_rounds",
        "chat_rate_limit_window_seconds",
        "sandbox_idle_timeout_seconds",
        "sandbox_sweep_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("reserved_output_tokens", "memory_token_budget", "document_token_budget")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @property
    def context_ceiling_tokens(self) -> int:
        """Tokens available to the prompt once the output reservation is taken."""
        return self.context_window_tokens - self.reserved_output_tokens

    @property
    def sandbox_allow_unjailed(self) -> bool:
        return self.test_mode or self.sandbox_allow_unjailed_dev

    def rate_limit_multiplier(self, plan_tier: str | None) -> float:
        tier = (plan_tier or "free").lower()
        if tier == "enterprise":
            return self.rate_limit_multiplier_enterprise
        if tier == "paid":
            return self.rate_limit_multiplier_paid
        return self.rate_limit_multiplier_free


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
