"""Settings via pydantic-settings with QUILL_ env prefix.

API credentials use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the rest of the toolchain uses,
so a single .env file drives everything.
"""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="QUILL_", env_file=".env", populate_by_name=True)

    log_level: str = "info"
    session_id: str = "quill-default"

    # Auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 8192
    max_turns: int = 25  # Max model requests per user turn

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Network retry (stream open)
    network_max_attempts: int = 3
    network_backoff_base: float = 0.5  # seconds
    network_backoff_max: float = 8.0  # seconds

    # Tool scheduling
    tool_max_concurrency: int = 5
    tool_max_attempts: int = 3
    tool_retry_base_delay: float = 0.5  # seconds
    tool_retry_max_delay: float = 8.0  # seconds
    tool_retry_jitter: float = 0.25  # fraction of the delay, 0 disables
    tool_timeout: float = 120.0  # seconds
    working_directory: str = "."

    # Permissions
    permission_mode: Literal["allow", "deny", "ask"] = "ask"
    permission_ask_timeout: float = 30.0  # seconds

    # Compaction
    compaction_enabled: bool = True
    compaction_threshold: int = 150_000  # estimated tokens
    compaction_max_messages: int = 500
    compaction_min_messages: int = 10
    compaction_target_ratio: float = 0.5
    compaction_window: int = 5
    compaction_max_preserved_calls: int = 20

    # Event Bus
    event_bus_enabled: bool = True
    event_bus_max_queue: int = 1000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not 0.0 < self.compaction_target_ratio < 1.0:
            raise ValueError("compaction_target_ratio must be between 0 and 1 (exclusive)")
        if self.tool_max_concurrency < 1:
            raise ValueError("tool_max_concurrency must be >= 1")
        if self.tool_max_attempts < 1 or self.network_max_attempts < 1:
            raise ValueError("max attempts must be >= 1")
        if self.compaction_min_messages < 2:
            raise ValueError("compaction_min_messages must be >= 2")
        return self


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.log_level."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
