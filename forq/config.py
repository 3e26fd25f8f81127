"""Configuration management for forq."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME_DIR = Path("~/.forq").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
DEFAULT_GLOBAL_PERMISSIONS_PATH = DEFAULT_HOME_DIR / "permissions.json"
DEFAULT_HISTORY_PATH = DEFAULT_HOME_DIR / "history"
LOCAL_CONFIG_DIRNAME = ".forq"
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model gateway configuration."""

    provider: str = "anthropic"
    model: str = "claude-3-7-sonnet-latest"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    timeout: float = 120.0
    max_retries: int = 2


class ContextConfig(BaseModel):
    """Conversation window and compaction configuration."""

    window_size: int = 20
    compaction_threshold: int | None = None
    keep_count: int | None = None
    summary_chars: int = 100

    @model_validator(mode="after")
    def _check_window(self) -> "ContextConfig":
        if self.window_size < 1:
            raise ValueError("window_size must be positive")
        if self.effective_keep_count >= self.effective_threshold - 1:
            raise ValueError(
                "keep_count must leave room below compaction_threshold "
                f"({self.effective_keep_count} >= {self.effective_threshold} - 1)"
            )
        return self

    @property
    def effective_threshold(self) -> int:
        if self.compaction_threshold is not None:
            return self.compaction_threshold
        return self.window_size * 2

    @property
    def effective_keep_count(self) -> int:
        if self.keep_count is not None:
            return self.keep_count
        return self.window_size


class LoopConfig(BaseModel):
    """Orchestration loop configuration."""

    complete_tool_cycle: bool = True
    max_rounds: int = Field(default=25, ge=1)
    stream: bool = True


class PermissionsConfig(BaseModel):
    """Permission ledger configuration."""

    persist: bool = True
    global_path: str = str(DEFAULT_GLOBAL_PERMISSIONS_PATH)
    project_path: str = f"{LOCAL_CONFIG_DIRNAME}/permissions.json"
    # Seconds a permission prompt may stay unanswered; None waits forever.
    request_timeout: float | None = 300.0


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 120
    blocked: list[str] = [
        "rm -rf /",
        "rm -rf /*",
        "rm -rf ~",
        "rm -rf .",
        "DROP",
        "drop",
        "DELETE FROM",
        "delete from",
        "shutdown",
        "reboot",
        "halt",
        "poweroff",
        "mkfs",
        "dd",
        "fdisk",
        "curl | bash",
        "wget | bash",
        "curl | sh",
        "wget | sh",
        "> /dev/sda",
        "> /dev/hda",
        ":(){:|:&};:",
    ]


class EmbeddingsConfig(BaseModel):
    """Embedding service used by the semantic search tools."""

    model: str = "nomic-embed-text"
    base_url: str = "http://127.0.0.1:11434"
    timeout: float = 60.0
    cache_path: str = str(DEFAULT_HOME_DIR / "cache" / "embeddings.json")
    # Seconds a cached vector stays valid.
    cache_ttl: float = 24 * 60 * 60
    batch_size: int = 5
    max_file_chars: int = 8000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "echo",
        "listDir",
        "readFile",
        "createFile",
        "editFile",
        "deleteFile",
        "bash",
        "fileSearch",
        "grepSearch",
        "semanticEmbed",
        "semanticSearch",
        "readSemanticSearchFiles",
    ]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    max_read_bytes: int = 1_000_000
    max_search_results: int = 50
    # Default timeout for tools that do not declare their own.
    timeout: float = 60.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: Literal["console", "json"] = "console"
    file: str = ""


class UIConfig(BaseModel):
    """UI configuration."""

    prompt: str = "forq> "
    history_path: str = str(DEFAULT_HISTORY_PATH)
    history_size: int = 1000
    colors: bool = True
    tool_output_chars: int = 200


class Config(BaseSettings):
    """Main configuration for forq."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    ui: UIConfig = Field(default_factory=UIConfig)

    model_config = SettingsConfigDict(
        env_prefix="FORQ_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with project-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_DIRNAME / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; environment fills unset fields."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_permission_paths(self, project_root: Path | str | None = None) -> tuple[Path, Path]:
        """Return (global, project) permission file paths."""
        global_path = Path(self.permissions.global_path).expanduser()
        project_path = Path(self.permissions.project_path).expanduser()
        if not project_path.is_absolute():
            anchor = Path(project_root).expanduser() if project_root is not None else Path.cwd()
            project_path = anchor / project_path
        return global_path.resolve(), project_path.resolve()


# Global config instance (CLI layer only)
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
