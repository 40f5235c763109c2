"""Configuration loader."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .models import AppConfig
from .validators import check_for_warnings, emit_warnings

DEFAULT_CONFIG_LOCATIONS = [Path("config.yaml"), Path("config") / "config.yaml"]


def load_config(config_path: Optional[Path] = None) -> Tuple[AppConfig, EnvironmentConfig]:
    """Load and validate configuration from the YAML file and environment.

    Without ``config_path``, ``config.yaml`` and then ``config/config.yaml``
    are tried.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Tuple of (AppConfig, EnvironmentConfig) with validated configuration

    Raises:
        ConfigurationError: If configuration is invalid or file not found
    """
    config_file = _find_config_file(config_path)
    config_dict = _read_yaml(config_file)

    warning_messages = check_for_warnings(config_dict)
    if warning_messages:
        emit_warnings(warning_messages)

    app_config = parse_app_config(config_dict)

    try:
        env_config = load_environment_config()
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load environment configuration: {e}",
            suggestions=["Copy .env.example to .env and adjust the values"],
        ) from e

    return app_config, env_config


def parse_app_config(config_dict: Dict[str, Any]) -> AppConfig:
    """Validate a configuration dictionary into an AppConfig.

    Raises:
        ConfigurationError: With one readable entry per validation problem
    """
    try:
        return AppConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            "Configuration validation failed",
            errors=format_validation_errors(e),
            suggestions=[
                "Review config.example.yaml for correct format",
                "Check that all required fields are present",
                "Verify field types match the expected schema",
            ],
        ) from e


def format_validation_errors(error: ValidationError) -> List[str]:
    """Render pydantic errors as ``field -> path: message`` lines."""
    messages = []
    for item in error.errors():
        field_path = " -> ".join(str(loc) for loc in item["loc"])
        error_type = item["type"]

        if error_type == "missing":
            messages.append(f"Missing required field: {field_path}")
        elif error_type in ("string_type", "int_type", "float_type", "bool_type", "list_type"):
            expected = error_type.replace("_type", "")
            messages.append(
                f"Invalid type for '{field_path}': expected {expected}, got {item.get('input')!r}"
            )
        elif "enum" in error_type:
            messages.append(f"Invalid value for '{field_path}': {item['msg']}")
        else:
            messages.append(f"{field_path}: {item['msg']}")
    return messages


def _read_yaml(config_file: Path) -> Dict[str, Any]:
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Configuration file not found: {config_file}",
            suggestions=["Copy config.example.yaml to config.yaml"],
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {e}",
            suggestions=[
                "Check YAML syntax in your config file",
                "Ensure proper indentation (use spaces, not tabs)",
            ],
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {e}",
            suggestions=[f"Ensure {config_file} is readable", "Check file permissions"],
        ) from e

    if not config_dict:
        raise ConfigurationError(
            "Configuration file is empty",
            suggestions=["Copy config.example.yaml to config.yaml and fill in your profile"],
        )
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            "Configuration file must contain a mapping at the top level",
            suggestions=["Review config.example.yaml for correct format"],
        )
    return config_dict


def _find_config_file(config_path: Optional[Path] = None) -> Path:
    """Resolve the configuration file path.

    Raises:
        ConfigurationError: If no config file is found
    """
    if config_path:
        if not config_path.exists():
            raise ConfigurationError(
                f"Specified configuration file not found: {config_path}",
                suggestions=[f"Ensure {config_path} exists", "Check the path and try again"],
            )
        return config_path

    for candidate in DEFAULT_CONFIG_LOCATIONS:
        if candidate.exists():
            return candidate

    raise ConfigurationError(
        "Configuration file not found",
        errors=[f"Tried: {candidate}" for candidate in DEFAULT_CONFIG_LOCATIONS],
        suggestions=[
            "Copy config.example.yaml to config.yaml",
            "Use --config flag to specify a custom location",
        ],
    )


def validate_config_file(config_path: Path) -> bool:
    """Validate a configuration file without reading the environment.

    Returns:
        True if valid, False otherwise (the problem is printed)
    """
    try:
        parse_app_config(_read_yaml(config_path))
    except ConfigurationError as e:
        print(f"✗ Configuration validation failed:\n{e}")
        return False

    print(f"✓ Configuration file {config_path} is valid")
    return True
