"""
relaymcp validation module.

This module provides configuration validation and schema enforcement.
"""

from relaymcp.validation.config import Config, ConfigError, ProviderConfig

__all__ = ["Config", "ConfigError", "ProviderConfig"]
