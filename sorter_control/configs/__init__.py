"""Sorter configuration loading and validation."""

from sorter_control.configs.loader import (
    ConnectionConfig,
    LoggingConfig,
    PoseConfig,
    SorterConfig,
    TemplateConfig,
    build_connection,
    build_engine,
    configure_logging,
    load_config,
)
from sorter_control.errors import ConfigError

__all__ = [
    "ConfigError",
    "ConnectionConfig",
    "LoggingConfig",
    "PoseConfig",
    "SorterConfig",
    "TemplateConfig",
    "build_connection",
    "build_engine",
    "configure_logging",
    "load_config",
]
