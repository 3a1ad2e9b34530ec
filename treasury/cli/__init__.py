"""
Treasury CLI Tools
"""

from .main import build_service, cli

__all__ = ["build_service", "cli"]
