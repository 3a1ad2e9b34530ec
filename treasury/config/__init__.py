"""
Treasury Unified Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    ChainConfig,
    ClearingConfig,
    LedgerConfig,
    LoggingConfig,
    SQLiteConfig,
    TreasuryConfig,
    load_config,
)

__all__ = [
    "ChainConfig",
    "ClearingConfig",
    "LedgerConfig",
    "LoggingConfig",
    "SQLiteConfig",
    "TreasuryConfig",
    "load_config",
]
