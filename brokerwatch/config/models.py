"""Configuration schema models using Pydantic."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from brokerwatch.domain.models import SchedulingConfig
from brokerwatch.domain.versions import InvalidVersionError, parse_version

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


class ProfileName(BaseModel):
    """One name the user may be listed under."""

    first: str = Field(..., min_length=1)
    middle: Optional[str] = None
    last: str = Field(..., min_length=1)

    @field_validator("first", "last")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Field cannot be empty or whitespace-only")
        return stripped

    @field_validator("middle")
    @classmethod
    def blank_middle_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class ProfileAddress(BaseModel):
    """One city/state the user has lived in."""

    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=2)

    @field_validator("city", "state")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Field cannot be empty or whitespace-only")
        return stripped


class ProfileConfig(BaseModel):
    """The user's profile; every name/address pair becomes one profile query."""

    names: List[ProfileName] = Field(..., min_length=1)
    addresses: List[ProfileAddress] = Field(..., min_length=1)
    birth_year: int = Field(..., ge=1900, le=2100)


class EngineConfig(BaseModel):
    """Job engine pacing, retry and timeout settings."""

    pacing_delay_seconds: float = Field(
        1.0, ge=0, le=60, description="Pause between consecutive actions"
    )
    click_await_seconds: float = Field(
        2.0, ge=0, le=120, description="Pause after a click so the page can react"
    )
    max_retries: int = Field(3, ge=0, le=10, description="Retries per run before failing")
    retry_delay_seconds: float = Field(5.0, ge=0, le=600)
    action_timeout_seconds: float = Field(
        60.0, gt=0, le=600, description="Ceiling for a single driver call"
    )
    job_timeout_seconds: float = Field(
        900.0, gt=0, le=7200, description="Wall-clock ceiling for one job"
    )
    driver: Optional[str] = Field(
        None, description="Driver factory reference, 'package.module:callable'"
    )

    @model_validator(mode="after")
    def validate_timeouts(self):
        if self.action_timeout_seconds > self.job_timeout_seconds:
            raise ValueError("action_timeout_seconds cannot exceed job_timeout_seconds")
        return self


class SchedulingDefaults(BaseModel):
    """Worker pool size and the cadence used by brokers without their own."""

    max_concurrency: int = Field(4, ge=1, le=32)
    retry_error_hours: float = Field(48, gt=0)
    confirm_opt_out_hours: float = Field(72, gt=0)
    maintenance_scan_hours: float = Field(120, gt=0)
    max_attempts: int = Field(-1, ge=-1)
    update_brokers_each_run: bool = Field(
        False, description="Re-run broker reconciliation at the start of every tick"
    )

    def defaults(self) -> SchedulingConfig:
        return SchedulingConfig(
            retry_error_hours=self.retry_error_hours,
            confirm_opt_out_hours=self.confirm_opt_out_hours,
            maintenance_scan_hours=self.maintenance_scan_hours,
            max_attempts=self.max_attempts,
        )


class ServicesConfig(BaseModel):
    """Captcha and email service endpoints."""

    captcha_base_url: Optional[str] = None
    email_base_url: Optional[str] = None
    http_request_timeout: int = Field(30, ge=5, le=300)
    user_agent: str = Field("brokerwatch/1.0", min_length=1)
    poll_interval_seconds: float = Field(5.0, gt=0, le=300)
    max_poll_attempts: int = Field(60, ge=1, le=1000)

    @field_validator("captcha_base_url", "email_base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        stripped = v.strip()
        if not stripped.startswith(("http://", "https://")):
            raise ValueError(f"Service URL must start with http:// or https://, got: {stripped}")
        return stripped.rstrip("/")

    @field_validator("user_agent")
    @classmethod
    def strip_user_agent(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("user_agent cannot be empty")
        return stripped


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object."""

    profile: ProfileConfig
    brokers_dir: str = Field("broker_definitions", min_length=1)
    app_version: str = Field("1.0.0", description="Version gating broker reconciliation")
    scan_interval: str = Field("1h", description="How often the scheduler ticks")
    engine: EngineConfig = Field(default_factory=EngineConfig)
    scheduling: SchedulingDefaults = Field(default_factory=SchedulingDefaults)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    scan_interval_seconds: Optional[int] = None

    @field_validator("app_version")
    @classmethod
    def validate_app_version(cls, v: str) -> str:
        try:
            parse_version(v)
        except InvalidVersionError as e:
            raise ValueError(str(e)) from e
        return v.strip()

    @field_validator("scan_interval")
    @classmethod
    def validate_scan_interval(cls, v: str) -> str:
        try:
            validate_duration_range(parse_duration(v), min_seconds=60, max_seconds=86400)
        except DurationParseError as e:
            raise ValueError(str(e)) from e
        return v

    @model_validator(mode="after")
    def compute_fields(self):
        self.scan_interval_seconds = parse_duration(self.scan_interval)
        return self
