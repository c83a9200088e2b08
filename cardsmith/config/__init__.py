"""Configuration loading and validation."""

from .models import (
    EngineConfig,
    ZipLimitsConfig,
    PngConfig,
    BatchConfig,
    ApiConfig,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "EngineConfig",
    "ZipLimitsConfig",
    "PngConfig",
    "BatchConfig",
    "ApiConfig",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
