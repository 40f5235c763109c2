"""Captcha-solving service client.

Solving is a two-step exchange: the site's captcha parameters are submitted and
a transaction id comes back; the solution for that transaction is then polled
until it is ready, the backend gives up, or the poll budget runs out.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from brokerwatch.logging import get_logger

from .base import BaseServiceClient
from .exceptions import (
    CaptchaServiceError,
    ServiceHTTPError,
    ServiceResponseError,
    ServiceTimeoutError,
)

logger = get_logger(__name__, component="captcha_service")

SUBMIT_SUCCESS = "SUCCESS"
SUBMIT_FAILURE_TRANSIENT = "FAILURE_TRANSIENT"
SUBMIT_FAILURE_CRITICAL = "FAILURE_CRITICAL"
SUBMIT_INVALID_REQUEST = "INVALID_REQUEST"

RESULT_READY = "SOLUTION_READY"
RESULT_NOT_READY = "SOLUTION_NOT_READY"
RESULT_FAILURE = "FAILURE"
RESULT_INVALID_REQUEST = "INVALID_REQUEST"


class CaptchaSubmitResponse(BaseModel):
    message: str
    transaction_id: Optional[str] = Field(None, alias="transactionId")


class CaptchaResultResponse(BaseModel):
    message: str
    data: Optional[str] = None


class CaptchaService(ABC):
    """Interface the job engine uses to solve captchas."""

    @abstractmethod
    def submit(self, captcha_info: Dict[str, Any], site_url: str) -> str:
        """Submit captcha parameters; returns a transaction id."""

    @abstractmethod
    def fetch_solution(self, transaction_id: str) -> str:
        """Wait for and return the solution token of a submitted captcha."""


class HTTPCaptchaService(BaseServiceClient, CaptchaService):
    """Captcha service backed by the captcha-solving HTTP API."""

    def submit(self, captcha_info: Dict[str, Any], site_url: str) -> str:
        """Submit captcha parameters read from the page.

        A transient backend failure is retried up to ``max_poll_attempts``
        times before giving up.

        Args:
            captcha_info: Parameters reported by the driver (site key, type, ...)
            site_url: URL of the page showing the captcha

        Returns:
            Transaction id to pass to fetch_solution()

        Raises:
            CaptchaServiceError: If the backend rejects the request
            ServiceError: On transport failures
        """
        url = self._url("/submit")
        payload = {**captcha_info, "url": site_url}

        for attempt in range(1, self.max_poll_attempts + 1):
            response = self._parse(CaptchaSubmitResponse, self._make_request(url, "POST", json_data=payload))

            if response.message == SUBMIT_SUCCESS and response.transaction_id:
                logger.info(
                    "Captcha submitted",
                    extra={"event": "captcha.submitted", "attempt": attempt},
                )
                return response.transaction_id
            if response.message == SUBMIT_FAILURE_TRANSIENT:
                logger.warning(
                    "Captcha backend reported a transient failure",
                    extra={"event": "captcha.submit_retry", "attempt": attempt},
                )
                if not self._wait(self.poll_interval):
                    break
                continue
            if response.message == SUBMIT_INVALID_REQUEST:
                raise CaptchaServiceError("Captcha submission rejected as invalid", critical=True)
            raise CaptchaServiceError(
                f"Captcha submission failed: {response.message}",
                critical=response.message == SUBMIT_FAILURE_CRITICAL,
            )

        raise ServiceTimeoutError("Captcha submission did not succeed in time", url=url)

    def fetch_solution(self, transaction_id: str) -> str:
        """Poll for the solution of ``transaction_id``.

        Raises:
            CaptchaServiceError: If the backend cannot solve it
            ServiceTimeoutError: If no solution arrives within the poll budget
        """
        url = self._url("/result")

        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                raw = self._make_request(url, "POST", json_data={"transactionId": transaction_id})
            except ServiceHTTPError as e:
                if not e.retryable:
                    raise
                raw = {"message": RESULT_NOT_READY}

            response = self._parse(CaptchaResultResponse, raw)
            if response.message == RESULT_READY and response.data:
                logger.info(
                    "Captcha solution received",
                    extra={"event": "captcha.solved", "attempt": attempt},
                )
                return response.data
            if response.message == RESULT_FAILURE:
                raise CaptchaServiceError("Captcha backend could not solve the captcha")
            if response.message == RESULT_INVALID_REQUEST:
                raise CaptchaServiceError("Captcha transaction unknown to backend", critical=True)

            if not self._wait(self.poll_interval):
                break

        raise ServiceTimeoutError(
            f"No captcha solution after {self.max_poll_attempts} polls", url=url
        )

    @staticmethod
    def _parse(model, raw: Dict[str, Any]):
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            raise ServiceResponseError(f"Unexpected captcha service response: {e}") from e
