"""Configuration loading and validation for chaosgate."""

from chaosgate.config.settings import Settings, load_settings
from chaosgate.config.validator import ValidationError, validate_settings

__all__ = ["Settings", "load_settings", "ValidationError", "validate_settings"]
