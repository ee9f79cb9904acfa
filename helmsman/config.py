"""Configuration management for Helmsman."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.helmsman/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.helmsman/tasks.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.2
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    context_window: int | None = None


class TaskConfig(BaseModel):
    """Per-task behaviour."""

    always_allow_read_only: bool = False
    custom_instructions: str = ""
    mistake_limit: int = 3
    stall_limit: int = 3


class ContextConfig(BaseModel):
    """Context window configuration."""

    default_window: int = 128_000
    reserve_tokens: int = 40_000
    max_usage_ratio: float = 0.8


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "execute_command",
        "read_file",
        "write_to_file",
        "list_files",
        "search_files",
        "ask_followup_question",
        "attempt_completion",
    ]
    command_timeout: int = 600
    read_max_bytes: int = 300_000
    list_limit: int = 200
    search_max_results: int = 300


class StorageConfig(BaseModel):
    """Task persistence configuration."""

    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Helmsman."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    task: TaskConfig = Field(default_factory=TaskConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="HELM_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_context_window(self) -> int:
        """Context window of the configured model, or the default budget."""
        window = self.model.context_window
        if window and window > 0:
            return int(window)
        return int(self.context.default_window)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
