"""Configuration management components."""

from .manager import ConfigManager
from .schema import SessionConfig, ValidationError

__all__ = ["ConfigManager", "SessionConfig", "ValidationError"]
