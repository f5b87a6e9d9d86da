"""
govtally TOML Configuration Loader

Loads every section of config.toml with environment variable overrides.

Environment variable mapping:
    [database.sqlite] path           → GOVTALLY_DB_PATH
    [chain] events_url               → GOVTALLY_EVENTS_URL
    [chain] network                  → GOVTALLY_NETWORK
    [chain] contract_id              → GOVTALLY_CONTRACT_ID
    [governance] voting_period       → GOVTALLY_VOTING_PERIOD
    [governance] evaluate_on_vote    → GOVTALLY_EVALUATE_ON_VOTE
    [logging] level                  → GOVTALLY_LOG_LEVEL
    [logging] file_output            → GOVTALLY_LOG_FILE_OUTPUT

Defaults for the store path, events URL and log level come from .env via
``govtally.constants``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    AVERAGE_WEIGHT_DECIMALS,
    DEFAULT_VOTING_PERIOD_SECONDS,
    EVALUATE_MAX_ATTEMPTS,
    EVENTS_REQUEST_TIMEOUT,
    GOVTALLY_DB_PATH,
    GOVTALLY_EVENTS_URL,
    LOG_FILE_OUTPUT,
    LOG_LEVEL,
    RATE_DECIMALS,
    WEIGHT_DECIMALS,
    parse_bool,
)
from ..exceptions import ConfigurationError
from ..logger import get_logger

logger = get_logger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(name: str) -> Optional[bool]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return None
    parsed = parse_bool(v)
    if not isinstance(parsed, bool):
        raise ConfigurationError(f"{name} must be true or false, got {v!r}")
    return parsed


def _env_number(name: str, kind):
    v = os.environ.get(name)
    if v is None or not v.strip():
        return None
    try:
        return kind(v)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {v!r}") from None


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------


@dataclass
class SQLiteConfig:
    """[database.sqlite]."""
    path: str = str(GOVTALLY_DB_PATH)
    wal_mode: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SQLiteConfig":
        return cls(
            path=data.get("path", str(GOVTALLY_DB_PATH)),
            wal_mode=data.get("wal_mode", True),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("GOVTALLY_DB_PATH"):
            self.path = v


@dataclass
class DatabaseConfig:
    """[database] section."""
    type: str = "sqlite"
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(
            type=data.get("type", "sqlite"),
            sqlite=SQLiteConfig.from_dict(data.get("sqlite", {})),
        )

    def apply_env(self) -> None:
        self.sqlite.apply_env()


@dataclass
class ChainConfig:
    """[chain] section: where on-chain events come from and how transactions are addressed."""
    network: str = "testnet"
    contract_id: str = ""
    events_url: str = str(GOVTALLY_EVENTS_URL)
    request_timeout: float = EVENTS_REQUEST_TIMEOUT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainConfig":
        return cls(
            network=data.get("network", "testnet"),
            contract_id=data.get("contract_id", ""),
            events_url=data.get("events_url", str(GOVTALLY_EVENTS_URL)),
            request_timeout=float(data.get("request_timeout", EVENTS_REQUEST_TIMEOUT)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("GOVTALLY_EVENTS_URL"):
            self.events_url = v
        if v := os.environ.get("GOVTALLY_NETWORK"):
            self.network = v
        if v := os.environ.get("GOVTALLY_CONTRACT_ID"):
            self.contract_id = v


@dataclass
class GovernanceSectionConfig:
    """[governance] section."""
    voting_period: int = DEFAULT_VOTING_PERIOD_SECONDS
    evaluate_on_vote: bool = True
    evaluate_max_attempts: int = EVALUATE_MAX_ATTEMPTS
    average_weight_decimals: int = AVERAGE_WEIGHT_DECIMALS
    rate_decimals: int = RATE_DECIMALS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceSectionConfig":
        return cls(
            voting_period=data.get("voting_period", DEFAULT_VOTING_PERIOD_SECONDS),
            evaluate_on_vote=data.get("evaluate_on_vote", True),
            evaluate_max_attempts=data.get("evaluate_max_attempts", EVALUATE_MAX_ATTEMPTS),
            average_weight_decimals=data.get("average_weight_decimals", AVERAGE_WEIGHT_DECIMALS),
            rate_decimals=data.get("rate_decimals", RATE_DECIMALS),
        )

    def apply_env(self) -> None:
        if (v := _env_number("GOVTALLY_VOTING_PERIOD", int)) is not None:
            self.voting_period = v
        if (v := _env_bool("GOVTALLY_EVALUATE_ON_VOTE")) is not None:
            self.evaluate_on_vote = v

    def parameters(self) -> Dict[str, Any]:
        """Locally enforced governance parameters, as reported by ``parameters``."""
        return {
            "votingPeriod": self.voting_period,
            "evaluateOnVote": self.evaluate_on_vote,
            "weightDecimals": WEIGHT_DECIMALS,
            "averageWeightDecimals": self.average_weight_decimals,
            "rateDecimals": self.rate_decimals,
            "tieBreak": "REJECTED",
        }


@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = str(LOG_LEVEL)
    file_output: bool = bool(LOG_FILE_OUTPUT)
    file: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=str(data.get("level", str(LOG_LEVEL))).upper(),
            file_output=data.get("file_output", bool(LOG_FILE_OUTPUT)),
            file=data.get("file", ""),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("GOVTALLY_LOG_LEVEL"):
            self.level = v.upper()
        if (v := _env_bool("GOVTALLY_LOG_FILE_OUTPUT")) is not None:
            self.file_output = v


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


@dataclass
class GovtallyConfig:
    """Complete configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    governance: GovernanceSectionConfig = field(default_factory=GovernanceSectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovtallyConfig":
        return cls(
            database=DatabaseConfig.from_dict(data.get("database", {})),
            chain=ChainConfig.from_dict(data.get("chain", {})),
            governance=GovernanceSectionConfig.from_dict(data.get("governance", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "GovtallyConfig":
        """
        Load configuration from a TOML file. A missing file yields the
        defaults (with env overrides applied).

        Raises:
            ConfigurationError: the file is not valid TOML
        """
        path = Path(config_path)
        if not path.exists():
            logger.debug(f"Config file not found: {config_path}, using defaults")
            cfg = cls()
            cfg.apply_env()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        logger.debug(f"Loaded configuration from {config_path}")
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.database.apply_env()
        self.chain.apply_env()
        self.governance.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Raises:
            ConfigurationError: on invalid config
        """
        if self.database.type != "sqlite":
            raise ConfigurationError("Only 'sqlite' database type is supported")
        if not self.database.sqlite.path:
            raise ConfigurationError("database.sqlite.path must not be empty")
        if self.chain.events_url and not self.chain.events_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Invalid chain.events_url: {self.chain.events_url}")
        if self.chain.request_timeout <= 0:
            raise ConfigurationError("chain.request_timeout must be > 0")
        if self.governance.voting_period < 0:
            raise ConfigurationError("governance.voting_period must be >= 0")
        if self.governance.evaluate_max_attempts < 1:
            raise ConfigurationError("governance.evaluate_max_attempts must be >= 1")
        for name in ("average_weight_decimals", "rate_decimals"):
            if not 0 <= getattr(self.governance, name) <= 18:
                raise ConfigurationError(f"governance.{name} must be between 0 and 18")
        if self.logging.level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid logging.level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "database": {
                "type": self.database.type,
                "sqlite": {
                    "path": self.database.sqlite.path,
                    "wal_mode": self.database.sqlite.wal_mode,
                },
            },
            "chain": {
                "network": self.chain.network,
                "contract_id": self.chain.contract_id,
                "events_url": self.chain.events_url,
                "request_timeout": self.chain.request_timeout,
            },
            "governance": {
                "voting_period": self.governance.voting_period,
                "evaluate_on_vote": self.governance.evaluate_on_vote,
                "evaluate_max_attempts": self.governance.evaluate_max_attempts,
                "average_weight_decimals": self.governance.average_weight_decimals,
                "rate_decimals": self.governance.rate_decimals,
            },
            "logging": {
                "level": self.logging.level,
                "file_output": self.logging.file_output,
                "file": self.logging.file,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> GovtallyConfig:
    """
    Load configuration.

    Resolution order:
        1. Explicit *path* argument
        2. GOVTALLY_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("GOVTALLY_CONFIG", "config.toml")

    return GovtallyConfig.from_file(path)
