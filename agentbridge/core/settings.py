"""Settings and configuration management.

Settings are read from environment variables (and a ``.env`` file) through
pydantic-settings. An optional YAML file can overlay any value; fields the
file does not mention still come from the environment.
"""

import logging
import os
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

import yaml  # type: ignore[import-untyped]
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agentbridge.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ["Read", "Edit", "Write", "Glob", "Grep", "Bash"]

CommaList = Annotated[List[str], NoDecode]


def _split_commas(value: Any) -> Any:
    """Accept ``"a, b,c"`` as well as real lists."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class FeishuSettings(BaseSettings):
    """Feishu/Lark application credentials."""

    app_id: str = Field(default="", validation_alias=AliasChoices("FEISHU_APP_ID", "app_id"))
    app_secret: str = Field(default="", validation_alias=AliasChoices("FEISHU_APP_SECRET", "app_secret"))
    verification_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("FEISHU_VERIFICATION_TOKEN", "verification_token"),
        description="Token Feishu puts in every event callback; checked when set",
    )
    base_url: str = Field(
        default="https://open.feishu.cn",
        validation_alias=AliasChoices("FEISHU_BASE_URL", "base_url"),
        description="Open API host; use https://open.larksuite.com for Lark",
    )
    bot_open_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("FEISHU_BOT_OPEN_ID", "bot_open_id"),
        description="When set, group messages must mention this open_id; otherwise any mention counts",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class ClaudeSettings(BaseSettings):
    """Agent backend settings."""

    default_working_directory: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CLAUDE_DEFAULT_WORKING_DIRECTORY", "default_working_directory"),
    )
    allowed_tools: CommaList = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS),
        validation_alias=AliasChoices("CLAUDE_ALLOWED_TOOLS", "allowed_tools"),
    )
    max_turns: int = Field(default=50, validation_alias=AliasChoices("CLAUDE_MAX_TURNS", "max_turns"))
    max_budget_usd: float = Field(default=1.0, validation_alias=AliasChoices("CLAUDE_MAX_BUDGET_USD", "max_budget_usd"))
    model: Optional[str] = Field(default=None, validation_alias=AliasChoices("CLAUDE_MODEL", "model"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def split_allowed_tools(cls, v):
        """Parse comma-separated tool names, keeping the defaults when empty."""
        tools = _split_commas(v)
        return tools or list(DEFAULT_ALLOWED_TOOLS)

    @field_validator("max_turns")
    @classmethod
    def validate_max_turns(cls, v):
        """Validate max_turns is positive."""
        if v <= 0:
            raise ValueError("max_turns must be positive")
        return v


class BridgeSettings(BaseSettings):
    """Top-level settings for the bridge process."""

    feishu: FeishuSettings = Field(default_factory=FeishuSettings)
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)

    # Authorization; empty lists allow everyone
    authorized_user_ids: CommaList = Field(
        default_factory=list, validation_alias=AliasChoices("AUTHORIZED_USER_IDS", "authorized_user_ids")
    )
    authorized_chat_ids: CommaList = Field(
        default_factory=list, validation_alias=AliasChoices("AUTHORIZED_CHAT_IDS", "authorized_chat_ids")
    )

    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL", "log_level"))

    # Task orchestration
    task_timeout_seconds: float = Field(
        default=3600.0, validation_alias=AliasChoices("BRIDGE_TASK_TIMEOUT", "task_timeout_seconds")
    )
    update_interval_seconds: float = Field(
        default=1.5,
        validation_alias=AliasChoices("BRIDGE_UPDATE_INTERVAL", "update_interval_seconds"),
        description="Minimum spacing between card updates for one task",
    )
    session_ttl_seconds: float = Field(
        default=86400.0, validation_alias=AliasChoices("BRIDGE_SESSION_TTL", "session_ttl_seconds")
    )
    session_sweep_interval_seconds: float = Field(
        default=3600.0, validation_alias=AliasChoices("BRIDGE_SESSION_SWEEP_INTERVAL", "session_sweep_interval_seconds")
    )
    outputs_root: Path = Field(
        default=Path("/tmp/agentbridge/outputs"), validation_alias=AliasChoices("BRIDGE_OUTPUTS_ROOT", "outputs_root")
    )
    scratch_dir: Path = Field(
        default=Path("/tmp/agentbridge/inputs"), validation_alias=AliasChoices("BRIDGE_SCRATCH_DIR", "scratch_dir")
    )

    # HTTP server
    host: str = Field(default="0.0.0.0", validation_alias=AliasChoices("BRIDGE_HOST", "host"))
    port: int = Field(default=8080, validation_alias=AliasChoices("BRIDGE_PORT", "port"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("authorized_user_ids", "authorized_chat_ids", mode="before")
    @classmethod
    def split_id_lists(cls, v):
        """Parse comma-separated id lists."""
        return _split_commas(v)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator(
        "task_timeout_seconds", "update_interval_seconds", "session_ttl_seconds", "session_sweep_interval_seconds"
    )
    @classmethod
    def validate_positive(cls, v):
        """Validate positive durations."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    def validate_for_runtime(self) -> None:
        """Check the settings a running server cannot do without.

        Raises:
            ConfigurationError: If Feishu credentials are missing
        """
        if not self.feishu.app_id:
            raise ConfigurationError("Missing required setting: FEISHU_APP_ID", config_key="feishu.app_id")
        if not self.feishu.app_secret:
            raise ConfigurationError("Missing required setting: FEISHU_APP_SECRET", config_key="feishu.app_secret")


def load_settings(config_path: Optional[str] = None) -> BridgeSettings:
    """
    Loads bridge settings from the environment plus an optional YAML file.

    Args:
        config_path: Path to a YAML file whose keys mirror BridgeSettings
                     fields. Values from the file win over the environment.

    Returns:
        A validated BridgeSettings object.

    Raises:
        ConfigurationError: If the file cannot be parsed or a value is invalid.
    """
    config_data: Dict[str, Any] = {}

    if config_path:
        if os.path.exists(config_path):
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from: {config_path}")
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Failed to parse config file '{config_path}': {e}", cause=e)
            if not isinstance(config_data, dict):
                raise ConfigurationError(f"Config file '{config_path}' must contain a mapping")
        else:
            logger.warning(f"Configuration file not found at '{config_path}'. Using environment only.")

    try:
        # Nested sections are built explicitly so their own env lookup still runs
        feishu = FeishuSettings(**(config_data.pop("feishu", None) or {}))
        claude = ClaudeSettings(**(config_data.pop("claude", None) or {}))
        return BridgeSettings(feishu=feishu, claude=claude, **config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", cause=e)
