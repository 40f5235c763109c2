"""Environment variable loading and validation."""

import os
from typing import Optional

from .exceptions import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./data/brokerwatch.db"
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_ENVIRONMENTS = ["development", "staging", "production", "test"]


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        log_level: Optional[str] = None,
        environment: Optional[str] = None,
        service_auth_token: Optional[str] = None,
        driver: Optional[str] = None,
    ):
        self.database_url = database_url or DEFAULT_DATABASE_URL
        self.log_level = log_level.upper() if log_level else None
        self.environment = (environment or "development").lower()
        self.service_auth_token = service_auth_token
        self.driver = driver

    def __repr__(self) -> str:
        token = "***" if self.service_auth_token else None
        return (
            f"EnvironmentConfig(database_url={self.database_url!r}, "
            f"log_level={self.log_level!r}, environment={self.environment!r}, "
            f"service_auth_token={token!r}, driver={self.driver!r})"
        )


def load_environment_config() -> EnvironmentConfig:
    """Load and validate environment variables.

    All variables are optional:
    - DATABASE_URL: SQLite database URL (default: sqlite:///./data/brokerwatch.db)
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - ENVIRONMENT: development, staging, production or test
    - SERVICE_AUTH_TOKEN: Bearer token for the captcha and email services
    - BROKERWATCH_DRIVER: Automation driver factory, 'package.module:callable'

    Returns:
        EnvironmentConfig object with validated values

    Raises:
        ConfigurationError: If a variable is set to an invalid value
    """
    errors = []

    database_url = os.getenv("DATABASE_URL")
    log_level = os.getenv("LOG_LEVEL")
    environment = os.getenv("ENVIRONMENT")
    service_auth_token = os.getenv("SERVICE_AUTH_TOKEN")
    driver = os.getenv("BROKERWATCH_DRIVER")

    if database_url is not None and not database_url.startswith("sqlite"):
        errors.append(f"Invalid DATABASE_URL: '{database_url}'. Only sqlite URLs are supported.")

    if log_level and log_level.upper() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if environment and environment.lower() not in VALID_ENVIRONMENTS:
        errors.append(
            f"Invalid ENVIRONMENT: '{environment}'. "
            f"Must be one of: {', '.join(VALID_ENVIRONMENTS)}"
        )

    if driver is not None and ":" not in driver:
        errors.append(f"Invalid BROKERWATCH_DRIVER: '{driver}'. Expected 'module:factory'.")

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and adjust the values",
                "Unset variables you do not need; all of them are optional",
            ],
        )

    return EnvironmentConfig(
        database_url=database_url,
        log_level=log_level,
        environment=environment,
        service_auth_token=service_auth_token,
        driver=driver,
    )
