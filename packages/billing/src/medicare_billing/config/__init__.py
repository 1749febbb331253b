"""Configuration module for the Medicare billing core."""

from medicare_billing.config.logging import configure_logging, get_logger
from medicare_billing.config.settings import FlatSettings, get_settings

__all__ = ["FlatSettings", "get_settings", "configure_logging", "get_logger"]
