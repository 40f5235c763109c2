"""Automation driver interface.

The driver is the host-supplied, browser-like component that actually loads
pages and performs actions. The engine only ever talks to it through this
interface, and each job owns exactly one driver instance.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from brokerwatch.domain.actions import Action


class DriverError(Exception):
    """Base class for errors raised by an automation driver."""

    pass


class DriverNavigationError(DriverError):
    """A page load failed; ``status_code`` is 0 for network-level failures."""

    def __init__(self, message: str, status_code: int = 0, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class DriverTimeoutError(DriverError):
    """A page load or action did not settle in time."""

    pass


class PageInvalidatedError(DriverError):
    """The page was replaced or reset (session expired, redirect to the start)."""

    pass


class DriverActionError(DriverError):
    """An action could not be performed on the current page.

    Typical causes: a selector matched nothing, an expectation was not met.
    """

    pass


@dataclass
class ActionContext:
    """Data handed to the driver along with an action.

    Attributes:
        fields: Profile values by field name (``firstName``, ``profileUrl``, ...)
        email: Generated email address for forms that ask for one
        captcha_token: Solved captcha token for ``solveCaptcha``
    """

    fields: Dict[str, Any] = field(default_factory=dict)
    email: Optional[str] = None
    captcha_token: Optional[str] = None

    def form_values(self) -> Dict[str, Any]:
        values = dict(self.fields)
        if self.email:
            values["email"] = self.email
        return values


@dataclass
class ActionResult:
    """What the driver reports back from one action.

    Attributes:
        profiles: Listings read by an ``extract`` action, one dict per listing
        captcha_info: Captcha parameters read by ``getCaptchaInfo``
        data: Any other driver-specific output
    """

    profiles: List[Dict[str, Any]] = field(default_factory=list)
    captcha_info: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = field(default_factory=dict)


class AutomationDriver(ABC):
    """Browser-like automation session used by one job.

    Every call runs on a worker thread under the action timeout. A call that
    overruns is abandoned, not interrupted: it may still be running when the
    engine issues the retry or calls ``finish``. Implementations must make
    ``finish`` safe to call at that point and must let it end any call still
    in flight.
    """

    @abstractmethod
    def load(self, url: str) -> None:
        """Navigate to ``url`` and wait for the page to settle.

        Raises:
            DriverNavigationError: On a failing status or network error
            DriverTimeoutError: If the page never settles
        """

    @abstractmethod
    def execute(self, action: Action, context: ActionContext) -> ActionResult:
        """Perform ``action`` on the current page.

        Raises:
            DriverActionError: If the action cannot be performed
            DriverTimeoutError: If the action does not complete
            PageInvalidatedError: If the page was reset underneath the job
        """

    @abstractmethod
    def finish(self) -> None:
        """Release the session. Called exactly once when the job ends.

        May run while an abandoned ``load`` or ``execute`` call is in flight.
        """


DriverFactory = Callable[[], AutomationDriver]


def load_driver_factory(reference: str) -> DriverFactory:
    """Resolve a ``"package.module:callable"`` reference to a driver factory.

    Raises:
        ValueError: If ``reference`` is malformed or does not name a callable
        ImportError: If the module cannot be imported
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Driver reference must look like 'module:factory', got {reference!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{reference!r} does not name a callable")
    return factory
