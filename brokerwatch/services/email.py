"""Email-verification service client.

Opt-out forms that ask for an email address get a generated one from this
service; brokers then send a confirmation link to it, which is polled here.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, ValidationError

from brokerwatch.logging import get_logger

from .base import BaseServiceClient
from .exceptions import EmailServiceError, ServiceResponseError, ServiceTimeoutError

logger = get_logger(__name__, component="email_service")

LINK_READY = "ready"
LINK_PENDING = "pending"
LINK_UNKNOWN = "unknown"


class GeneratedEmailResponse(BaseModel):
    email_address: EmailStr = Field(..., alias="emailAddress")


class ConfirmationLinkResponse(BaseModel):
    status: str
    link: Optional[str] = None


class EmailService(ABC):
    """Interface the job engine uses for form emails and confirmation links."""

    @abstractmethod
    def generate_email(self, broker_url: str) -> str:
        """Return a fresh address to give to ``broker_url``."""

    @abstractmethod
    def fetch_confirmation_link(
        self, email_address: str, poll_interval: Optional[float] = None
    ) -> str:
        """Wait for and return the confirmation link sent to ``email_address``.

        ``poll_interval`` overrides the client's default seconds between polls.
        """


class HTTPEmailService(BaseServiceClient, EmailService):
    """Email service backed by the email-verification HTTP API."""

    def generate_email(self, broker_url: str) -> str:
        """Request a generated address for one broker.

        Raises:
            EmailServiceError: If the response carries no usable address
            ServiceError: On transport failures
        """
        raw = self._make_request(self._url("/generate"), params={"dataBroker": broker_url})
        try:
            response = GeneratedEmailResponse.model_validate(raw)
        except ValidationError as e:
            raise EmailServiceError(f"Email service returned no valid address: {e}") from e

        logger.info("Generated opt-out email address", extra={"event": "email.generated"})
        return str(response.email_address)

    def fetch_confirmation_link(
        self, email_address: str, poll_interval: Optional[float] = None
    ) -> str:
        """Poll until the confirmation link for ``email_address`` arrives.

        Raises:
            EmailServiceError: If the backend reports the address as unknown
            ServiceTimeoutError: If no link arrives within the poll budget
        """
        url = self._url("/links")
        interval = self.poll_interval if poll_interval is None else poll_interval

        for attempt in range(1, self.max_poll_attempts + 1):
            raw = self._make_request(url, params={"e": email_address})
            try:
                response = ConfirmationLinkResponse.model_validate(raw)
            except ValidationError as e:
                raise ServiceResponseError(f"Unexpected email service response: {e}") from e

            if response.status == LINK_READY and response.link:
                logger.info(
                    "Confirmation link received",
                    extra={"event": "email.link_received", "attempt": attempt},
                )
                return response.link
            if response.status == LINK_UNKNOWN:
                raise EmailServiceError("Email service does not know this address")

            if not self._wait(interval):
                break

        raise ServiceTimeoutError(
            f"No confirmation link after {self.max_poll_attempts} polls", url=url
        )
