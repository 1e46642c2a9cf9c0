"""Settings via pydantic-settings with AGENTKIT_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

import logging

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentkit.history.schemas import RetentionPolicy, ToolResultPolicy, ToolResultStrategy
from agentkit.utils import LogVerbosity


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENTKIT_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("agentkit", validation_alias="DB_USER")
    db_password: str = Field("agentkit_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("agentkit", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Store scoping
    tenant_id: str | None = None
    user_id: str | None = None

    # Turn engine
    max_tool_rounds_per_turn: int = Field(10, ge=1)  # safety valve
    enable_turn_validation: bool = True
    system_prompt: str = ""

    # Context retention
    max_messages_to_send: int = Field(50, ge=0)  # 0 = unlimited
    keep_recent_messages_intact: int = Field(5, ge=0)
    tool_result_strategy: ToolResultStrategy = ToolResultStrategy.KEEP_RECENT
    tool_result_keep_recent: int = Field(3, ge=0)
    max_multimodal_messages: int | None = Field(None, ge=0)

    # Output sanitization
    sanitize_output: bool = True
    strip_thinking_tags: bool = True
    unwrap_json_fences: bool = True
    remove_null_characters: bool = True
    trim_whitespace: bool = True

    # Task loop
    max_turns: int = Field(20, ge=1)
    detect_stuck_agent: bool = True
    break_on_stuck: bool = False
    stuck_threshold: int = Field(3, ge=2)

    # Summarization
    summarization_enabled: bool = False
    summarization_trigger_at: int = Field(100, ge=2)
    summarization_keep_recent: int = Field(10, ge=0)
    summary_tool_result_keep_recent: int = Field(2, ge=0)

    # Content logging
    log_user_input: LogVerbosity = "truncated"
    log_agent_output: LogVerbosity = "truncated"
    log_tool_requests: LogVerbosity = "truncated"
    log_tool_responses: LogVerbosity = "truncated"
    log_truncation_length: int = Field(200, ge=1)

    @model_validator(mode="after")
    def _validate_summarization(self) -> "Settings":
        if self.summarization_enabled:
            if self.summarization_keep_recent >= self.summarization_trigger_at:
                raise ValueError(
                    f"summarization_keep_recent ({self.summarization_keep_recent}) must be < "
                    f"summarization_trigger_at ({self.summarization_trigger_at})"
                )
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def retention_policy(self) -> RetentionPolicy:
        """Policy for what the turn engine sends to the model."""
        return RetentionPolicy(
            max_messages_to_send=self.max_messages_to_send,
            keep_recent_messages_intact=self.keep_recent_messages_intact,
            tool_results=ToolResultPolicy(
                strategy=self.tool_result_strategy,
                keep_recent=self.tool_result_keep_recent,
            ),
            max_multimodal_messages=self.max_multimodal_messages,
        )

    def summary_retention_policy(self) -> RetentionPolicy:
        """Policy applied to messages before they are summarized."""
        return RetentionPolicy(
            tool_results=ToolResultPolicy.recent(self.summary_tool_result_keep_recent),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
