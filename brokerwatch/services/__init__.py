"""Clients for the external captcha-solving and email-verification services."""

from .base import BaseServiceClient
from .captcha import CaptchaService, HTTPCaptchaService
from .email import EmailService, HTTPEmailService
from .exceptions import (
    CaptchaServiceError,
    EmailServiceError,
    ServiceConfigurationError,
    ServiceError,
    ServiceHTTPError,
    ServiceResponseError,
    ServiceTimeoutError,
)

__all__ = [
    "BaseServiceClient",
    "CaptchaService",
    "HTTPCaptchaService",
    "EmailService",
    "HTTPEmailService",
    "ServiceError",
    "ServiceHTTPError",
    "ServiceTimeoutError",
    "ServiceResponseError",
    "ServiceConfigurationError",
    "CaptchaServiceError",
    "EmailServiceError",
]
