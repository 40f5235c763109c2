"""Custom exceptions for the captcha and email service clients."""


class ServiceError(Exception):
    """Base exception for all external service errors.

    Catching this handles any failure talking to the captcha or email backend;
    the job engine maps it onto the job error taxonomy.
    """

    pass


class ServiceHTTPError(ServiceError):
    """HTTP request failed with a 4xx/5xx status or never reached the server.

    ``status_code`` is 0 when the connection itself failed.
    """

    def __init__(self, message: str, status_code: int, url: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url

    @property
    def retryable(self) -> bool:
        return self.status_code == 0 or self.status_code >= 500


class ServiceTimeoutError(ServiceError):
    """A request, or a whole polling sequence, did not finish in time."""

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url


class ServiceResponseError(ServiceError):
    """The service answered, but the body could not be parsed or validated."""

    pass


class ServiceConfigurationError(ServiceError):
    """Invalid client configuration (bad timeout, empty user agent, ...)."""

    pass


class CaptchaServiceError(ServiceError):
    """The captcha backend rejected a request or could not solve the captcha.

    Attributes:
        critical: True when retrying the same captcha cannot succeed
    """

    def __init__(self, message: str, critical: bool = False) -> None:
        super().__init__(message)
        self.critical = critical


class EmailServiceError(ServiceError):
    """The email backend could not issue an address or deliver a confirmation link."""

    pass
