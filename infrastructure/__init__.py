"""
STRATA INFRASTRUCTURE - Storage and system-level modules

This package contains:
- project_store: versioned per-project storage and change-request application
- registry: enumeration of the projects under a storage root
- documents: atomic document and snapshot-bundle persistence
- config: TOML configuration
- logger: change-request lifecycle events
"""

from infrastructure.config import StrataConfig, load_config
from infrastructure.logger import LoggerConfig, MutationLogger, configure_logging
from infrastructure.project_store import ProjectStore
from infrastructure.registry import ProjectRegistry

__all__ = [
    "StrataConfig",
    "load_config",
    "LoggerConfig",
    "MutationLogger",
    "configure_logging",
    "ProjectStore",
    "ProjectRegistry",
]
