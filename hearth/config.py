"""Configuration management for Hearth."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.hearth/config.yaml").expanduser()
DEFAULT_DATA_DIR = "~/.hearth"
LOCAL_CONFIG_FILENAME = "config.yaml"


class DaemonConfig(BaseModel):
    """HTTP daemon configuration."""

    host: str = "127.0.0.1"
    port: int = 8080
    auth_token: str = ""
    max_connections: int = 20
    max_body_bytes: int = 1_048_576
    max_header_bytes: int = 65_536
    rate_limit_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    read_timeout_seconds: float = 30.0
    trace_limit: int = 50
    latency_samples: int = 100


class ModelConfig(BaseModel):
    """Default backend model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    base_url: str = ""
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 120.0


class AgentProfileConfig(BaseModel):
    """Step budget and rule set for one agent type."""

    step_limit: int = 100
    rule_set: str = "general"


def _default_profiles() -> dict[str, AgentProfileConfig]:
    return {
        "general": AgentProfileConfig(step_limit=100, rule_set="general"),
        "research": AgentProfileConfig(step_limit=200, rule_set="research"),
        "coder": AgentProfileConfig(step_limit=150, rule_set="coder"),
    }


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    default_type: str = "general"
    profiles: dict[str, AgentProfileConfig] = Field(default_factory=_default_profiles)
    max_tool_result_chars: int = 8000
    max_context_messages: int = 120
    stream_backend: bool = False
    max_sub_agent_depth: int = 2

    def profile(self, agent_type: str | None) -> AgentProfileConfig:
        """Resolve a profile, falling back to the default agent type."""
        key = (agent_type or "").strip().lower() or self.default_type
        if key in self.profiles:
            return self.profiles[key]
        return self.profiles.get(self.default_type) or AgentProfileConfig()


class PoolConfig(BaseModel):
    """Worker pool configuration."""

    size: int = 4

    @field_validator("size")
    @classmethod
    def _clamp_size(cls, value: int) -> int:
        return max(1, min(16, int(value)))


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "response",
        "file",
        "core_memory_read",
        "core_memory_append",
        "core_memory_replace",
        "call_subordinate",
    ]
    error_threshold: int = 5
    timeout_seconds: float = 60.0
    delegation_timeout_seconds: float = 600.0
    deny: list[str] = Field(default_factory=list)
    file_root: str = ""


class StorageConfig(BaseModel):
    """Durable storage locations."""

    data_dir: str = DEFAULT_DATA_DIR
    max_versions: int = 100

    @property
    def root(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"

    @property
    def versions_dir(self) -> Path:
        return self.root / "memory_versions"

    @property
    def core_memory_path(self) -> Path:
        return self.root / "core_memory.json"

    @property
    def entries_db_path(self) -> Path:
        return self.root / "memory_entries.db"

    @property
    def tasks_path(self) -> Path:
        return self.root / "tasks.json"

    @property
    def workflows_path(self) -> Path:
        return self.root / "workflows.json"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Hearth."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="HEARTH_",
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
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; `HEARTH_*` env vars cover keys the YAML leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
