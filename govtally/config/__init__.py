"""
govtally Configuration

Loads config.toml; environment variables override TOML values.
"""

from .loader import (
    ChainConfig,
    DatabaseConfig,
    GovernanceSectionConfig,
    GovtallyConfig,
    LoggingConfig,
    SQLiteConfig,
    load_config,
)

__all__ = [
    "ChainConfig",
    "DatabaseConfig",
    "GovernanceSectionConfig",
    "GovtallyConfig",
    "LoggingConfig",
    "SQLiteConfig",
    "load_config",
]
