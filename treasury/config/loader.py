"""
Treasury TOML Configuration Loader

Loads all sections of config.toml at startup with environment variable
overrides.  Each section is a dataclass with ``from_dict`` and ``apply_env``.

Environment variable mapping:
    [ledger] backend          → TREASURY_LEDGER_BACKEND
    [ledger.sqlite] path      → TREASURY_DB_PATH
    [chain] chain_id          → TREASURY_CHAIN_ID
    [chain] rpc_url           → TREASURY_RPC_URL
    [chain] contract_address  → TREASURY_CONTRACT_ADDRESS
    [clearing] settlement_unit → TREASURY_SETTLEMENT_UNIT
    [logging] level           → TREASURY_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from eth_utils import is_address

from ..constants import (
    DEFAULT_CHAIN_ID,
    DEFAULT_GAS_PRICE,
    MAX_ID_RETRIES,
    RPC_TIMEOUT,
    SETTLEMENT_UNIT,
    TOKEN_DECIMALS,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Placeholder treasury contract for local development
DEV_CONTRACT_ADDRESS = "0x" + "00" * 19 + "01"


# -- Ledger -------------------------------------------------------------

@dataclass
class SQLiteConfig:
    """[ledger.sqlite]."""
    path: str = "data/treasury.db"
    wal_mode: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SQLiteConfig":
        return cls(
            path=data.get("path", "data/treasury.db"),
            wal_mode=data.get("wal_mode", True),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("TREASURY_DB_PATH"):
            self.path = v


@dataclass
class LedgerConfig:
    """[ledger] section."""
    backend: str = "sqlite"
    max_id_retries: int = MAX_ID_RETRIES
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(
            backend=data.get("backend", "sqlite"),
            max_id_retries=data.get("max_id_retries", MAX_ID_RETRIES),
            sqlite=SQLiteConfig.from_dict(data.get("sqlite", {})),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("TREASURY_LEDGER_BACKEND"):
            self.backend = v
        self.sqlite.apply_env()


# -- Chain --------------------------------------------------------------

@dataclass
class ChainConfig:
    """[chain] section."""
    chain_id: int = DEFAULT_CHAIN_ID
    rpc_url: str = ""
    rpc_timeout: float = RPC_TIMEOUT
    contract_address: str = DEV_CONTRACT_ADDRESS
    gas_price: int = DEFAULT_GAS_PRICE
    token_decimals: int = TOKEN_DECIMALS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainConfig":
        return cls(
            chain_id=data.get("chain_id", DEFAULT_CHAIN_ID),
            rpc_url=data.get("rpc_url", ""),
            rpc_timeout=data.get("rpc_timeout", RPC_TIMEOUT),
            contract_address=data.get("contract_address", DEV_CONTRACT_ADDRESS),
            gas_price=data.get("gas_price", DEFAULT_GAS_PRICE),
            token_decimals=data.get("token_decimals", TOKEN_DECIMALS),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("TREASURY_CHAIN_ID"):
            self.chain_id = int(v)
        if v := os.environ.get("TREASURY_RPC_URL"):
            self.rpc_url = v
        if v := os.environ.get("TREASURY_CONTRACT_ADDRESS"):
            self.contract_address = v
        if v := os.environ.get("TREASURY_GAS_PRICE"):
            self.gas_price = int(v)


# -- Clearing -----------------------------------------------------------

@dataclass
class ClearingConfig:
    """[clearing] section."""
    settlement_unit: Decimal = SETTLEMENT_UNIT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingConfig":
        # TOML floats would lose precision; read through str
        return cls(settlement_unit=Decimal(str(data.get("settlement_unit", SETTLEMENT_UNIT))))

    def apply_env(self) -> None:
        if v := os.environ.get("TREASURY_SETTLEMENT_UNIT"):
            self.settlement_unit = Decimal(v)


# -- Logging ------------------------------------------------------------

@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = "INFO"
    file_output: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=data.get("level", "INFO"),
            file_output=data.get("file_output", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("TREASURY_LOG_LEVEL"):
            self.level = v


# -----------------------------------------------------------------------
# Top-level unified config
# -----------------------------------------------------------------------

@dataclass
class TreasuryConfig:
    """
    Unified treasury configuration.

    Loads every section of config.toml and applies environment variable
    overrides.  This is the single source of truth at runtime.
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    clearing: ClearingConfig = field(default_factory=ClearingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TreasuryConfig":
        """Create TreasuryConfig from a parsed TOML dict."""
        return cls(
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            chain=ChainConfig.from_dict(data.get("chain", {})),
            clearing=ClearingConfig.from_dict(data.get("clearing", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "TreasuryConfig":
        """
        Load configuration from a TOML file.

        A missing file yields defaults with environment overrides.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            raw: Dict[str, Any] = {}
        else:
            with open(path, "rb") as f:
                try:
                    raw = tomli.load(f)
                except tomli.TOMLDecodeError as e:
                    raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        try:
            cfg = cls.from_dict(raw)
            cfg.apply_env()
        except (InvalidOperation, ValueError) as e:
            raise ConfigurationError(f"Invalid value in {config_path}: {e}") from e
        return cfg

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.ledger.apply_env()
        self.chain.apply_env()
        self.clearing.apply_env()
        self.logging.apply_env()

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.ledger.backend not in ("memory", "sqlite"):
            raise ConfigurationError(f"Unknown ledger backend: {self.ledger.backend}")
        if self.ledger.max_id_retries < 0:
            raise ConfigurationError("max_id_retries must be >= 0")
        if self.chain.chain_id < 1:
            raise ConfigurationError("chain_id must be >= 1")
        if not is_address(self.chain.contract_address):
            raise ConfigurationError(f"Invalid contract_address: {self.chain.contract_address}")
        if not 0 <= self.chain.token_decimals <= 36:
            raise ConfigurationError("token_decimals must be between 0 and 36")
        if self.clearing.settlement_unit <= 0:
            raise ConfigurationError("settlement_unit must be positive")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "ledger": {
                "backend": self.ledger.backend,
                "max_id_retries": self.ledger.max_id_retries,
                "sqlite": {"path": self.ledger.sqlite.path, "wal_mode": self.ledger.sqlite.wal_mode},
            },
            "chain": {
                "chain_id": self.chain.chain_id,
                "rpc_url": self.chain.rpc_url,
                "contract_address": self.chain.contract_address,
                "gas_price": self.chain.gas_price,
                "token_decimals": self.chain.token_decimals,
            },
            "clearing": {"settlement_unit": str(self.clearing.settlement_unit)},
            "logging": {"level": self.logging.level, "file_output": self.logging.file_output},
        }


def load_config(path: Optional[str] = None) -> TreasuryConfig:
    """
    Load treasury configuration.

    Resolution order:
        1. Explicit *path* argument
        2. TREASURY_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("TREASURY_CONFIG", "config.toml")

    return TreasuryConfig.from_file(path)
