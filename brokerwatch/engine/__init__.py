"""Job execution: action interpreter, automation driver interface and job engine."""

from .driver import (
    ActionContext,
    ActionResult,
    AutomationDriver,
    DriverActionError,
    DriverError,
    DriverFactory,
    DriverNavigationError,
    DriverTimeoutError,
    PageInvalidatedError,
    load_driver_factory,
)
from .exceptions import (
    CaptchaUnsolvableError,
    EmailVerificationFailedError,
    ExtractionMismatchError,
    JobCancelledError,
    JobError,
    JobErrorKind,
    JobTimedOutError,
    NavigationFailedError,
    StorageFailureError,
    UnknownJobError,
)
from .interpreter import ActionInterpreter
from .job import JobEngine, build_interpreter
from .models import JobInput, JobKind, JobResult, JobState, build_extracted_profile

__all__ = [
    # Engine
    "JobEngine",
    "build_interpreter",
    "ActionInterpreter",
    "JobInput",
    "JobKind",
    "JobResult",
    "JobState",
    "build_extracted_profile",
    # Driver interface
    "AutomationDriver",
    "ActionContext",
    "ActionResult",
    "DriverFactory",
    "load_driver_factory",
    "DriverError",
    "DriverNavigationError",
    "DriverTimeoutError",
    "DriverActionError",
    "PageInvalidatedError",
    # Errors
    "JobError",
    "JobErrorKind",
    "JobCancelledError",
    "UnknownJobError",
    "NavigationFailedError",
    "ExtractionMismatchError",
    "CaptchaUnsolvableError",
    "EmailVerificationFailedError",
    "StorageFailureError",
    "JobTimedOutError",
]
