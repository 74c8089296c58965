"""Settings via pydantic-settings with SIBER_ env prefix.

Provider API keys and the long-standing feature switches use
validation_alias so they are read from the same unprefixed env vars
(ANTHROPIC_API_KEY, ENABLE_AI_FALLBACK, ...) that existing .env files set.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SIBER_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    working_directory: str = "."
    max_sessions: int = 100

    # Provider credentials (unprefixed aliases)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    deepseek_api_key: str = Field("", validation_alias="DEEPSEEK_API_KEY")
    grok_api_key: str = Field("", validation_alias="GROK_API_KEY")
    qwen_api_key: str = Field("", validation_alias="QWEN_API_KEY")
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")

    # Models per provider
    anthropic_model: str = "claude-sonnet-4-5-20250514"
    openai_model: str = "gpt-4o"
    deepseek_model: str = "deepseek-chat"
    grok_model: str = "grok-3"
    qwen_model: str = "qwen-plus"
    gemini_model: str = "gemini-2.0-flash"
    anthropic_base_url: str = "https://api.anthropic.com"

    # LLM
    default_provider: str = Field("", validation_alias="DEFAULT_AI_PROVIDER")
    enable_fallback: bool = Field(False, validation_alias="ENABLE_AI_FALLBACK")
    stream_mode: bool = False
    max_tokens: int = 4096
    temperature: float = 0.7
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Request loop
    max_iterations: int = 15

    # Context optimizer
    context_optimization_enabled: bool = Field(
        True, validation_alias="ENABLE_CONTEXT_OPTIMIZATION"
    )
    context_optimization_actions: str = Field(
        "read_file", validation_alias="CONTEXT_OPTIMIZATION_ACTIONS"
    )
    optimizer_max_instances: int = 1
    optimizer_min_messages: int = 5
    summary_enabled: bool = True
    summary_threshold: int = 20
    summary_retention: int = 8

    # Activity log + sessions
    logging_enabled: bool = True
    log_dir: str = "./logs"
    log_retention_days: int = 7  # 0 keeps every file
    sessions_dir: str = "./sessions"

    # Tools
    command_timeout: int = 30  # seconds
    fetch_max_chars: int = 10000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.optimizer_max_instances < 1:
            raise ValueError("optimizer_max_instances must be >= 1")
        if self.summary_retention >= self.summary_threshold:
            raise ValueError(
                f"summary_retention ({self.summary_retention}) must be < "
                f"summary_threshold ({self.summary_threshold})"
            )
        return self

    @property
    def optimized_actions(self) -> list[str]:
        return [
            a.strip() for a in self.context_optimization_actions.split(",") if a.strip()
        ]
