"""Job error taxonomy.

Every way a job can end unsuccessfully is a JobError subclass with a ``kind``.
``retryable`` says whether the engine may re-issue the failing action within
the same run; it never controls whether the tuple is reconsidered on a later
tick (it always is).
"""

from enum import Enum
from typing import Optional


class JobErrorKind(str, Enum):
    """Stable identifiers for job failures, used in events and hooks."""

    CANCELLED = "cancelled"
    UNKNOWN = "unknown"
    NAVIGATION_FAILED = "navigation_failed"
    EXTRACTION_MISMATCH = "extraction_mismatch"
    CAPTCHA_UNSOLVABLE = "captcha_unsolvable"
    EMAIL_VERIFICATION_FAILED = "email_verification_failed"
    STORAGE_FAILURE = "storage_failure"
    TIMED_OUT = "timed_out"


class JobError(Exception):
    """Base class for job failures.

    Attributes:
        kind: Failure identifier
        retryable: Whether the same action may be re-issued within the run
        action_id: Id of the action that failed, when known
    """

    kind: JobErrorKind = JobErrorKind.UNKNOWN
    default_retryable: bool = False

    def __init__(
        self,
        message: str = "",
        action_id: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.action_id = action_id
        self.retryable = self.default_retryable if retryable is None else retryable

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class JobCancelledError(JobError):
    """The run was told to stop before finishing."""

    kind = JobErrorKind.CANCELLED


class UnknownJobError(JobError):
    """Any failure that does not fit a more specific kind."""

    kind = JobErrorKind.UNKNOWN


class NavigationFailedError(JobError):
    """A page could not be loaded (bad status, network failure, action timeout)."""

    kind = JobErrorKind.NAVIGATION_FAILED
    default_retryable = True

    def __init__(
        self,
        message: str = "",
        action_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, action_id, retryable)
        self.status_code = status_code


class ExtractionMismatchError(JobError):
    """The page no longer matches the script; likely a site change. Never retried."""

    kind = JobErrorKind.EXTRACTION_MISMATCH

    def __init__(self, message: str = "", action_id: Optional[str] = None, retryable=None) -> None:
        super().__init__(message, action_id, retryable=False)


class CaptchaUnsolvableError(JobError):
    """The captcha service could not produce a usable solution."""

    kind = JobErrorKind.CAPTCHA_UNSOLVABLE
    default_retryable = True


class EmailVerificationFailedError(JobError):
    """No email address could be issued, or no confirmation link arrived."""

    kind = JobErrorKind.EMAIL_VERIFICATION_FAILED
    default_retryable = True


class StorageFailureError(JobError):
    """Persisting the outcome of a job failed."""

    kind = JobErrorKind.STORAGE_FAILURE


class JobTimedOutError(JobError):
    """The job exceeded its wall-clock ceiling."""

    kind = JobErrorKind.TIMED_OUT
