# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
procshell Configuration System

Centralized configuration management supporting:
- Environment variables (PROCSHELL_*)
- Config files (~/.procshell/config.yaml, ./.procshell.yaml)
- Programmatic defaults
- Pydantic validation

The executable search path is captured from PATH once, when the
configuration is loaded. Later changes to os.environ are not observed
until reload_config() is called.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger("procshell.config")


def _path_from_environment() -> List[str]:
    return os.environ.get("PATH", "").split(os.pathsep)


# ============================================================================
# Configuration Models
# ============================================================================


class ResolverConfig(BaseModel):
    """Executable lookup configuration"""

    search_path: List[str] = Field(
        default_factory=_path_from_environment,
        description="Directories scanned in order when resolving a command name",
    )

    @field_validator("search_path", mode="before")
    @classmethod
    def split_path_string(cls, v):
        """Accept a PATH-style string as well as a list"""
        if isinstance(v, str):
            return v.split(os.pathsep)
        return v


class StreamConfig(BaseModel):
    """Stream and decoding configuration"""

    chunk_size: int = Field(
        default=65536, description="Bytes read from a pipe per chunk", ge=1
    )
    encoding: str = Field(default="utf-8", description="Text encoding of child output")
    errors: str = Field(default="replace", description="Decoding error handler")

    @field_validator("encoding")
    @classmethod
    def validate_encoding(cls, v):
        """Reject codecs Python does not know"""
        import codecs

        try:
            codecs.lookup(v)
        except LookupError:
            raise ValueError(f"Unknown encoding: {v}")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    log_level: str = Field(default="WARNING", description="Logging level")
    file_logging: bool = Field(
        default=False, description="Also write logs to a rotating file"
    )
    log_dir: Path = Field(
        default_factory=lambda: Path.home() / ".procshell" / "logs",
        description="Log files directory",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator("log_dir", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert strings to Path objects"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class ProcShellConfig(BaseModel):
    """Complete procshell configuration"""

    resolver: ResolverConfig = Field(
        default_factory=ResolverConfig, description="Executable resolution"
    )
    streams: StreamConfig = Field(
        default_factory=StreamConfig, description="Stream handling"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )


# ============================================================================
# Configuration Loader
# ============================================================================


class ConfigLoader:
    """Load configuration from multiple sources"""

    @staticmethod
    def load_from_env() -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config: Dict[str, Any] = {}

        search_path = os.getenv("PROCSHELL_PATH")
        if search_path:
            config.setdefault("resolver", {})["search_path"] = search_path

        chunk_size = os.getenv("PROCSHELL_CHUNK_SIZE")
        if chunk_size:
            config.setdefault("streams", {})["chunk_size"] = chunk_size

        encoding = os.getenv("PROCSHELL_ENCODING")
        if encoding:
            config.setdefault("streams", {})["encoding"] = encoding

        log_level = os.getenv("PROCSHELL_LOG_LEVEL")
        if log_level:
            config.setdefault("logging", {})["log_level"] = log_level

        file_logs = os.getenv("PROCSHELL_FILE_LOGS")
        if file_logs:
            config.setdefault("logging", {})["file_logging"] = (
                file_logs.lower() == "true"
            )

        log_dir = os.getenv("PROCSHELL_LOG_DIR")
        if log_dir:
            config.setdefault("logging", {})["log_dir"] = log_dir

        return config

    @staticmethod
    def load_from_file(file_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(
                f"Failed to load config file {file_path}",
                details={"path": str(file_path)},
                cause=e,
            )

        if not isinstance(data, dict):
            raise ConfigError(
                f"Config file {file_path} must contain a mapping",
                details={"path": str(file_path)},
            )
        return data

    @staticmethod
    def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple configuration dictionaries"""
        result: Dict[str, Any] = {}
        for config in configs:
            for key, value in config.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = ConfigLoader.merge_configs(result[key], value)
                else:
                    result[key] = value
        return result


# ============================================================================
# Global Configuration Instance
# ============================================================================

_config: Optional[ProcShellConfig] = None


def get_config() -> ProcShellConfig:
    """
    Get global procshell configuration

    Configuration is loaded from (in order of precedence):
    1. Environment variables (PROCSHELL_*)
    2. .procshell.yaml in current directory
    3. ~/.procshell/config.yaml
    4. Default values

    Returns:
        ProcShellConfig instance
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def load_config(
    config_file: Optional[Path] = None, env_override: bool = True
) -> ProcShellConfig:
    """
    Load configuration from all sources

    Args:
        config_file: Optional specific config file to load
        env_override: Whether environment variables override file config

    Returns:
        ProcShellConfig instance

    Raises:
        ConfigError: a file is unreadable or a value fails validation
    """
    configs = []

    default_locations = [
        Path.home() / ".procshell" / "config.yaml",
        Path.cwd() / ".procshell.yaml",
    ]

    for location in default_locations:
        file_config = ConfigLoader.load_from_file(location)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {location}")

    if config_file:
        file_config = ConfigLoader.load_from_file(Path(config_file))
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {config_file}")

    if env_override:
        env_config = ConfigLoader.load_from_env()
        if env_config:
            configs.append(env_config)
            logger.debug("Loaded config from environment")

    merged = ConfigLoader.merge_configs(*configs) if configs else {}

    try:
        return ProcShellConfig(**merged)
    except ValidationError as e:
        raise ConfigError("Config validation failed", cause=e)


def reload_config() -> ProcShellConfig:
    """Reload global configuration"""
    global _config
    _config = load_config()
    logger.info("Configuration reloaded")
    return _config

