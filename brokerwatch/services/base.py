"""Shared HTTP plumbing for the captcha and email service clients."""

import logging
import threading
from typing import Any, Dict, Optional

import requests

from brokerwatch.logging import get_logger

from .exceptions import (
    ServiceConfigurationError,
    ServiceHTTPError,
    ServiceResponseError,
    ServiceTimeoutError,
)

logger = get_logger(__name__, component="services")


class BaseServiceClient:
    """Base class for JSON-over-HTTP service clients.

    Provides a configured ``requests.Session``, error mapping onto the
    service exception hierarchy, and an interruptible wait for polling.

    Attributes:
        base_url: Service root URL, without trailing slash
        timeout: HTTP request timeout in seconds
        poll_interval: Seconds between polls of a pending result
        max_poll_attempts: Polls before giving up on a pending result
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: int = 30,
        user_agent: str = "brokerwatch/1.0",
        poll_interval: float = 5.0,
        max_poll_attempts: int = 24,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service root URL
            auth_token: Bearer token sent with every request, if any
            timeout: HTTP request timeout in seconds (5-300)
            user_agent: User-Agent header
            poll_interval: Seconds between polls
            max_poll_attempts: Maximum number of polls per pending result
            stop_event: When set, polling stops early (shutdown)

        Raises:
            ServiceConfigurationError: If a parameter is out of range
        """
        if not base_url or not base_url.strip():
            raise ServiceConfigurationError("base_url cannot be empty")
        if not 5 <= timeout <= 300:
            raise ServiceConfigurationError(
                f"Timeout must be between 5 and 300 seconds, got: {timeout}"
            )
        if not user_agent or not user_agent.strip():
            raise ServiceConfigurationError("user_agent cannot be empty")
        if max_poll_attempts < 1:
            raise ServiceConfigurationError("max_poll_attempts must be at least 1")

        self.base_url = base_url.strip().rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._stop_event = stop_event or threading.Event()

        self._session = requests.Session()
        self._session.headers.update({"User-Agent": user_agent.strip()})
        if auth_token:
            self._session.headers.update({"Authorization": f"bearer {auth_token}"})

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless stopped; returns False if stopped."""
        return not self._stop_event.wait(seconds)

    def _make_request(
        self,
        url: str,
        method: str = "GET",
        params: Optional[Dict[str, str]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an HTTP request and return the decoded JSON object.

        Raises:
            ServiceHTTPError: On 4xx/5xx status or connection failure
            ServiceTimeoutError: On request timeout
            ServiceResponseError: On a body that is not a JSON object
        """
        try:
            logger.debug(
                f"HTTP {method} request to {url}",
                extra={"event": "service.request", "method": method, "url": url},
            )

            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )

            if response.status_code >= 400:
                is_retryable = response.status_code >= 500
                logger.log(
                    logging.WARNING if is_retryable else logging.ERROR,
                    f"HTTP {response.status_code} error from {url}",
                    extra={
                        "event": "service.retryable_error" if is_retryable else "service.error",
                        "status_code": response.status_code,
                        "url": url,
                    },
                )
                raise ServiceHTTPError(
                    f"HTTP {response.status_code}: {response.reason}",
                    status_code=response.status_code,
                    url=url,
                )

            try:
                data = response.json()
            except (ValueError, requests.exceptions.JSONDecodeError) as e:
                logger.error(
                    f"Failed to parse JSON response from {url}",
                    extra={"event": "service.error", "error_type": "JSONDecodeError", "url": url},
                )
                raise ServiceResponseError(f"Failed to parse JSON response from {url}: {e}") from e

            if not isinstance(data, dict):
                raise ServiceResponseError(f"Expected a JSON object from {url}")
            return data

        except requests.exceptions.Timeout as e:
            logger.warning(
                f"Request to {url} timed out after {self.timeout} seconds",
                extra={"event": "service.retryable_error", "error_type": "Timeout", "url": url},
            )
            raise ServiceTimeoutError(
                f"Request to {url} timed out after {self.timeout} seconds", url=url
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(
                f"Request to {url} failed: {e}",
                extra={"event": "service.error", "error_type": type(e).__name__, "url": url},
            )
            raise ServiceHTTPError(f"Request to {url} failed: {e}", status_code=0, url=url) from e

    def close(self) -> None:
        self._session.close()
