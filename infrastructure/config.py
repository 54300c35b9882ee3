"""
Configuration loading.

Settings live in ``config/strata.toml`` (or a path the caller gives) and are
read with ``tomllib`` into msgspec structs. Environment overrides:

- STRATA_HOME: storage root

Configuration is resolved by callers (CLIs, services, tests) and passed
down explicitly; the core never reads it.
"""
import os
import tomllib
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import msgspec

from core.graph_db import StrataError
from infrastructure.logger import LoggerConfig

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "strata.toml"
HOME_ENV_VAR = "STRATA_HOME"


class ConfigError(StrataError):
    pass


class StorageConfig(msgspec.Struct, kw_only=True):
    root: str = "~/.strata"

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()


class LoggingConfig(msgspec.Struct, kw_only=True):
    level: str = "INFO"
    mutation_log: bool = False
    log_dir: str = "logs"
    buffer_size: int = 10000


class ValidationConfig(msgspec.Struct, kw_only=True):
    enforce_dependency_rules: bool = True
    fail_on_mapping_warnings: bool = False


class StrataConfig(msgspec.Struct, kw_only=True):
    storage: StorageConfig = msgspec.field(default_factory=StorageConfig)
    logging: LoggingConfig = msgspec.field(default_factory=LoggingConfig)
    validation: ValidationConfig = msgspec.field(default_factory=ValidationConfig)

    def logger_config(self) -> LoggerConfig:
        """Mutation logger settings; a relative ``log_dir`` sits under the storage root."""
        log_path = Path(self.logging.log_dir).expanduser()
        if not log_path.is_absolute():
            log_path = self.storage.root_path / log_path
        return LoggerConfig(
            enable_file_log=self.logging.mutation_log,
            log_path=log_path,
            buffer_size=self.logging.buffer_size,
        )


def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read the raw TOML sections.

    A missing default file yields ``{}``; an unreadable or malformed file
    yields ``{}`` with a warning.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if path is None and not config_path.exists():
        return {}
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        warnings.warn(f"Failed to load config from {config_path}: {e}")
        return {}


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> StrataConfig:
    """
    Load the configuration and apply environment overrides.

    Raises:
        ConfigError: if a section holds values of the wrong type
    """
    raw = load_toml_config(path)
    try:
        config = msgspec.convert(raw, StrataConfig)
    except msgspec.ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    env = os.environ if environ is None else environ
    home = env.get(HOME_ENV_VAR)
    if home:
        config.storage.root = home
    return config
