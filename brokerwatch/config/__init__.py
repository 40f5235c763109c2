"""Configuration management: YAML settings plus environment overrides."""

from .duration import DurationParseError, parse_duration, validate_duration_range
from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_app_config, validate_config_file
from .models import (
    AppConfig,
    EngineConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    ProfileAddress,
    ProfileConfig,
    ProfileName,
    SchedulingDefaults,
    ServicesConfig,
)

__all__ = [
    # Main loader functions
    "load_config",
    "parse_app_config",
    "validate_config_file",
    "load_environment_config",
    # Configuration models
    "AppConfig",
    "ProfileConfig",
    "ProfileName",
    "ProfileAddress",
    "EngineConfig",
    "SchedulingDefaults",
    "ServicesConfig",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Durations
    "parse_duration",
    "validate_duration_range",
    "DurationParseError",
    # Exceptions
    "ConfigurationError",
]
