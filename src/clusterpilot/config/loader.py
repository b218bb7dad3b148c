"""
Configuration loading and validation for clusterpilot.
"""
import os
from pathlib import Path
from typing import Dict, Optional, Any

import yaml
from pydantic import BaseModel, Field, field_validator

from ..utils.exceptions import ConfigError


CONFIG_ENV_VAR = "CLUSTERPILOT_CONFIG"


class DatabaseConfig(BaseModel):
    """Registry database settings."""
    path: str = "~/.clusterpilot/registry.db"

    def resolved_path(self) -> Path:
        return Path(os.path.expanduser(self.path))


class HealthConfig(BaseModel):
    """Heartbeat and REST probe settings."""
    heartbeat_timeout_seconds: float = 30.0
    membership_rest_path: str = "/hazelcast/rest/cluster"
    api_rest_path: str = "/overview"

    @field_validator("heartbeat_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("heartbeat_timeout_seconds must be positive")
        return v


class AgentConfig(BaseModel):
    """Agent gateway settings. No gateway URL means no dispatcher."""
    gateway_url: Optional[str] = None
    command_timeout_seconds: float = 30.0


class HostDirectoryConfig(BaseModel):
    """Host inventory settings. No URL means an in-memory directory."""
    base_url: Optional[str] = None
    request_timeout_seconds: float = 10.0


class ExecutionConfig(BaseModel):
    """Fan-out settings for cluster-wide operations."""
    max_parallel_nodes: int = 8
    node_timeout_seconds: Optional[float] = None

    @field_validator("max_parallel_nodes")
    @classmethod
    def validate_workers(cls, v):
        if v < 1:
            raise ValueError("max_parallel_nodes must be at least 1")
        return v


class DeployConfig(BaseModel):
    """Deployment workflow settings."""
    installer_url: Optional[str] = None
    poll_interval_seconds: float = 1.0
    install_timeout_seconds: Optional[float] = 1800.0


class LockConfig(BaseModel):
    """Per-cluster writer lock settings. 0 waits indefinitely."""
    acquire_timeout_seconds: float = 0.0


class DefaultsConfig(BaseModel):
    """Engine defaults applied when a request leaves a value out."""
    version: str = "2.3.12"
    install_dir: str = "/opt/seatunnel-2.3.12"
    membership_port: int = 5801
    api_port: int = 8080
    worker_port: int = 5802


class ServerConfig(BaseModel):
    """API server settings."""
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True


class Config(BaseModel):
    """Main configuration object."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    hosts: HostDirectoryConfig = Field(default_factory=HostDirectoryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load and parse a YAML file.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML content as dictionary

    Raises:
        ConfigError: If file doesn't exist or is invalid
    """
    if not file_path.exists():
        raise ConfigError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, "r") as f:
            data = yaml.safe_load(f)
            if data is None:
                return {}
            return data
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {file_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Error reading {file_path}: {e}")


def default_config_path() -> Path:
    """config/default.yaml at the project root, unless overridden by env."""
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path(__file__).parent.parent.parent.parent / "config" / "default.yaml"


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load clusterpilot configuration from YAML file.

    Args:
        config_path: Path to config file (default: $CLUSTERPILOT_CONFIG or
            config/default.yaml)

    Returns:
        Validated Config object

    Raises:
        ConfigError: If configuration is invalid
    """
    if config_path is None:
        config_path = default_config_path()

    data = load_yaml_file(Path(config_path))

    try:
        return Config(**data)
    except Exception as e:
        raise ConfigError(f"Invalid configuration: {e}")


def save_config(config: Config, config_path: Path) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigError: If unable to save configuration
    """
    try:
        config_dict = config.model_dump(mode="json", exclude_none=True)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

    except OSError as e:
        raise ConfigError(f"Error saving configuration: {e}")
