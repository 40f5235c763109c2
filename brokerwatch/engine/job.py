"""Job engine: runs one scan or opt-out script against an automation driver.

``JobEngine`` holds only configuration and collaborators, so one instance can
serve every worker thread. Each ``run`` call builds a ``_JobRun`` that owns the
per-job state: the driver, the single-thread executor used to enforce action
timeouts, the retry counter and the values produced along the way (generated
email, captcha transaction, extracted listings).
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional

from brokerwatch.brokers.templating import TemplateRenderError, render_template
from brokerwatch.config.models import EngineConfig
from brokerwatch.domain.actions import (
    Action,
    ClickAction,
    EmailConfirmationAction,
    ExpectationAction,
    ExtractAction,
    FillFormAction,
    GetCaptchaInfoAction,
    NavigateAction,
    SolveCaptchaAction,
)
from brokerwatch.logging import get_logger
from brokerwatch.services.captcha import CaptchaService
from brokerwatch.services.email import EmailService
from brokerwatch.services.exceptions import CaptchaServiceError, ServiceError, ServiceHTTPError
from brokerwatch.utils.timestamps import utc_now

from .driver import (
    ActionContext,
    AutomationDriver,
    DriverActionError,
    DriverError,
    DriverNavigationError,
    DriverTimeoutError,
    PageInvalidatedError,
)
from .exceptions import (
    CaptchaUnsolvableError,
    EmailVerificationFailedError,
    ExtractionMismatchError,
    JobCancelledError,
    JobError,
    JobTimedOutError,
    NavigationFailedError,
    UnknownJobError,
)
from .interpreter import ActionInterpreter
from .models import JobInput, JobKind, JobResult, JobState, build_extracted_profile

logger = get_logger(__name__, component="engine")

EMAIL_FIELD = "email"
TRANSIENT_STATUS_CODES = {0, 408, 425, 429}


def build_interpreter(job_input: JobInput, email_available: bool = True) -> ActionInterpreter:
    """Interpreter for a job's script.

    Opt-out scripts are narrowed to the actions whose fields the query and
    the listing can supply; the email field counts as available when an email
    service is configured.
    """
    interpreter = ActionInterpreter(job_input.script)
    if job_input.kind is JobKind.SCAN:
        return interpreter

    fields = set(job_input.available_fields())
    if email_available:
        fields.add(EMAIL_FIELD)
    return interpreter.narrowed(fields)


class JobEngine:
    """Executes jobs; safe to share between worker threads."""

    def __init__(
        self,
        settings: EngineConfig,
        captcha_service: Optional[CaptchaService] = None,
        email_service: Optional[EmailService] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initialize the engine.

        Args:
            settings: Pacing, retry and timeout settings
            captcha_service: Solver for getCaptchaInfo/solveCaptcha actions
            email_service: Address and confirmation-link provider
            cancel_event: Set on shutdown; interrupts waits and cancels jobs
        """
        self.settings = settings
        self.captcha_service = captcha_service
        self.email_service = email_service
        self.cancel_event = cancel_event or threading.Event()

    def run(
        self,
        job_input: JobInput,
        driver: AutomationDriver,
        interpreter: Optional[ActionInterpreter] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> JobResult:
        """Run one job to a terminal state.

        Never raises for job failures: errors, including unexpected driver
        exceptions, are reported on the result. The driver is always finished.

        Args:
            job_input: Broker, query and (for opt-outs) listing to work on
            driver: Automation session owned by this job
            interpreter: Script cursor; defaults to ``build_interpreter(job_input)``
            should_continue: Checked before every action; False cancels the job

        Returns:
            JobResult in state completed, failed or cancelled
        """
        if interpreter is None:
            interpreter = build_interpreter(job_input, self.email_service is not None)
        return _JobRun(self, job_input, driver, interpreter, should_continue).execute()


class _JobRun:
    """State of a single job execution."""

    def __init__(
        self,
        engine: JobEngine,
        job: JobInput,
        driver: AutomationDriver,
        interpreter: ActionInterpreter,
        should_continue: Optional[Callable[[], bool]],
    ):
        self.engine = engine
        self.settings = engine.settings
        self.job = job
        self.driver = driver
        self.interpreter = interpreter
        self.should_continue = should_continue or (lambda: True)
        self.result = JobResult(kind=job.kind)
        self.context = ActionContext()
        self.deadline = 0.0
        self.current_url: Optional[str] = None
        self.page_not_found = False
        self.captcha_transaction: Optional[str] = None
        self.extracted = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._service_executor: Optional[ThreadPoolExecutor] = None

    # Lifecycle

    def execute(self) -> JobResult:
        result = self.result
        result.started_at = utc_now()
        self.deadline = time.monotonic() + self.settings.job_timeout_seconds
        log_extra = self.job.describe()

        try:
            result.transition(JobState.INITIALIZING)
            self.context = ActionContext(fields=self.job.available_fields())
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="driver")

            logger.info(
                f"Starting {self.job.kind.value} job on {self.job.broker.url}",
                extra={"event": "job.started", "action_count": len(self.interpreter), **log_extra},
            )
            result.transition(JobState.EXECUTING)
            self._run_script()
            result.transition(JobState.COMPLETED)

        except JobCancelledError as e:
            result.error = e
            result.transition(JobState.CANCELLED)
        except JobError as e:
            result.error = e
            result.transition(JobState.FAILED)
        except Exception as e:
            logger.error(
                f"Unexpected error in {self.job.kind.value} job: {e}",
                extra={"event": "job.unexpected_error", **log_extra},
                exc_info=True,
            )
            result.error = UnknownJobError(str(e) or type(e).__name__)
            result.transition(JobState.FAILED)
        finally:
            self._release()
            result.finished_at = utc_now()

        logger.info(
            f"{self.job.kind.value} job on {self.job.broker.url} ended {result.state.value}",
            extra={
                "event": f"job.{result.state.value}",
                "executed_actions": result.executed_actions,
                "error_kind": result.error.kind.value if result.error else None,
                "match_count": len(result.extracted_profiles),
                "duration_seconds": round(result.duration_seconds, 3),
                **log_extra,
            },
        )
        return result

    def _release(self) -> None:
        try:
            self.driver.finish()
        except Exception as e:
            logger.warning(
                f"Driver failed to finish cleanly: {e}",
                extra={"event": "job.driver_finish_failed", "error_type": type(e).__name__},
            )
        for executor in (self._executor, self._service_executor):
            if executor is not None:
                executor.shutdown(wait=False)
        self._executor = None
        self._service_executor = None

    # Main loop

    def _run_script(self) -> None:
        retries = 0
        restarts = 0

        while True:
            self._check_continue()
            action = self.interpreter.next_action()
            if action is None:
                break

            restarted = False
            while True:
                self._check_continue()
                self.result.executed_actions += 1
                try:
                    done = self._dispatch(action)
                except PageInvalidatedError as e:
                    restarts = self._count_retry(
                        restarts,
                        UnknownJobError(f"Page invalidated: {e}", action.id, retryable=True),
                    )
                    logger.warning(
                        "Page invalidated; restarting script from the first action",
                        extra={"event": "job.restarted", "action_id": action.id},
                    )
                    self.interpreter.restart()
                    self._reset_page_state()
                    restarted = True
                    break
                except JobError as e:
                    retries = self._count_retry(retries, e)
                    self._wait(self.settings.retry_delay_seconds)
                    continue
                retries = 0
                break

            if not restarted and done:
                return
            self._wait(self.settings.pacing_delay_seconds)

        if self.job.kind is JobKind.SCAN and not self.extracted:
            raise ExtractionMismatchError("Scan script ended without an extract action")

    def _count_retry(self, retries: int, error: JobError) -> int:
        """Return the incremented retry count, or raise ``error`` if no retry is allowed."""
        if not error.retryable or retries >= self.settings.max_retries:
            raise error
        logger.warning(
            f"Retrying action after {error.kind.value}: {error.message}",
            extra={
                "event": "job.action_retry",
                "action_id": error.action_id,
                "retry": retries + 1,
                "max_retries": self.settings.max_retries,
            },
        )
        return retries + 1

    def _check_continue(self) -> None:
        if self.engine.cancel_event.is_set() or not self.should_continue():
            raise JobCancelledError("Job cancelled before next action")
        if time.monotonic() >= self.deadline:
            raise JobTimedOutError(
                f"Job exceeded {self.settings.job_timeout_seconds:.0f}s wall-clock limit"
            )

    def _wait(self, seconds: float) -> None:
        """Sleep up to ``seconds`` (never past the deadline), waking on cancel."""
        remaining = self.deadline - time.monotonic()
        delay = min(seconds, max(remaining, 0.0))
        if delay > 0:
            self.engine.cancel_event.wait(delay)

    def _reset_page_state(self) -> None:
        self.current_url = None
        self.page_not_found = False
        self.captcha_transaction = None

    # Dispatch

    def _dispatch(self, action: Action) -> bool:
        """Perform one action; returns True when the job is complete."""
        if isinstance(action, NavigateAction):
            return self._navigate(action)
        if isinstance(action, ClickAction):
            self._drive(action, self.driver.execute, action, self.context)
            self._wait(self.settings.click_await_seconds)
            return False
        if isinstance(action, FillFormAction):
            if action.needs_email and self.context.email is None:
                self.context.email = self._generate_email(action)
            self._drive(action, self.driver.execute, action, self.context)
            return False
        if isinstance(action, ExtractAction):
            return self._extract(action)
        if isinstance(action, GetCaptchaInfoAction):
            self._get_captcha_info(action)
            return False
        if isinstance(action, SolveCaptchaAction):
            self._solve_captcha(action)
            return False
        if isinstance(action, ExpectationAction):
            self._drive(action, self.driver.execute, action, self.context)
            return False
        if isinstance(action, EmailConfirmationAction):
            self._confirm_email(action)
            return False
        raise UnknownJobError(f"Unsupported action type {type(action).__name__}", action.id)

    def _navigate(self, action: NavigateAction) -> bool:
        try:
            url = render_template(action.url, self.context.form_values(), action.age_range)
        except TemplateRenderError as e:
            raise UnknownJobError(str(e), action.id, retryable=False) from e

        try:
            self._drive(action, self.driver.load, url)
        except NavigationFailedError as e:
            if self.job.kind is JobKind.SCAN and e.status_code == 404:
                logger.info(
                    "Search page returned 404; treating as no matches",
                    extra={"event": "job.page_not_found", "action_id": action.id},
                )
                self.current_url = url
                self.page_not_found = True
                return False
            raise

        self.current_url = url
        self.page_not_found = False
        return False

    def _extract(self, action: ExtractAction) -> bool:
        if self.job.kind is JobKind.SCAN and self.page_not_found:
            raw_profiles: List[Dict[str, Any]] = []
        else:
            raw_profiles = self._drive(action, self.driver.execute, action, self.context).profiles

        candidates = []
        for raw in raw_profiles:
            profile = build_extracted_profile(self.job.broker, self.job.profile_query, raw)
            if profile is None:
                logger.warning(
                    "Discarding listing without name, URL or identifier",
                    extra={"event": "job.listing_discarded", "action_id": action.id},
                )
                continue
            candidates.append(profile)

        self.extracted = True
        if self.job.kind is JobKind.SCAN:
            self.result.extracted_profiles = _unique_by_fingerprint(candidates)
            return True

        target = self.job.extracted_profile
        self.result.profile_absent = all(c.fingerprint != target.fingerprint for c in candidates)
        return False

    def _get_captcha_info(self, action: GetCaptchaInfoAction) -> None:
        info = self._drive(action, self.driver.execute, action, self.context).captcha_info
        if not info:
            raise CaptchaUnsolvableError("No captcha information found on page", action.id)
        service = self._require_captcha_service(action)
        self.captcha_transaction = self._call_service(
            action, CaptchaUnsolvableError, service.submit, info, self.current_url or ""
        )

    def _solve_captcha(self, action: SolveCaptchaAction) -> None:
        if self.captcha_transaction is None:
            raise CaptchaUnsolvableError(
                "solveCaptcha reached without a submitted captcha", action.id, retryable=False
            )
        service = self._require_captcha_service(action)
        self.context.captcha_token = self._call_service(
            action, CaptchaUnsolvableError, service.fetch_solution, self.captcha_transaction
        )
        self._drive(action, self.driver.execute, action, self.context)

    def _generate_email(self, action: Action) -> str:
        service = self.engine.email_service
        if service is None:
            raise EmailVerificationFailedError(
                "Form needs an email address but no email service is configured",
                action.id,
                retryable=False,
            )
        return self._call_service(
            action, EmailVerificationFailedError, service.generate_email, self.job.broker.url
        )

    def _confirm_email(self, action: EmailConfirmationAction) -> None:
        service = self.engine.email_service
        if service is None or self.context.email is None:
            raise EmailVerificationFailedError(
                "No generated email address to confirm", action.id, retryable=False
            )
        link = self._call_service(
            action,
            EmailVerificationFailedError,
            service.fetch_confirmation_link,
            self.context.email,
            action.polling_time,
        )
        self._drive(action, self.driver.load, link)
        self.current_url = link

    def _require_captcha_service(self, action: Action) -> CaptchaService:
        if self.engine.captcha_service is None:
            raise CaptchaUnsolvableError(
                "No captcha service configured", action.id, retryable=False
            )
        return self.engine.captcha_service

    # Calls

    def _drive(self, action: Action, fn: Callable, *args):
        """Call the driver under the action timeout and translate its errors."""
        try:
            return self._call_with_timeout(fn, *args)
        except PageInvalidatedError:
            raise
        except DriverError as e:
            raise _translate_driver_error(action, e) from e

    def _call_with_timeout(self, fn: Callable, *args):
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise JobTimedOutError("Job wall-clock limit reached")
        timeout = min(self.settings.action_timeout_seconds, remaining)

        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            # The hung call keeps its thread; later calls get a fresh one.
            self._executor.shutdown(wait=False)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="driver")
            raise DriverTimeoutError(f"Driver call did not finish within {timeout:.0f}s") from e

    def _call_service(self, action: Action, error_cls, fn: Callable, *args):
        """Call a captcha or email service within the remaining job budget.

        The action timeout does not apply to service waits. A call still polling
        at the deadline is abandoned and stops on its own poll budget or on
        shutdown.
        """
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise JobTimedOutError("Job wall-clock limit reached", action.id)
        if self._service_executor is None:
            self._service_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="service")

        future = self._service_executor.submit(fn, *args)
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError as e:
            self._service_executor.shutdown(wait=False)
            self._service_executor = None
            raise JobTimedOutError(
                f"Service call still waiting at the {self.settings.job_timeout_seconds:.0f}s job limit",
                action.id,
            ) from e
        except CaptchaServiceError as e:
            raise error_cls(str(e), action.id, retryable=not e.critical) from e
        except ServiceHTTPError as e:
            raise error_cls(str(e), action.id, retryable=e.retryable) from e
        except ServiceError as e:
            raise error_cls(str(e), action.id, retryable=True) from e


def _translate_driver_error(action: Action, error: DriverError) -> JobError:
    if isinstance(error, DriverNavigationError):
        return NavigationFailedError(
            f"Navigation failed with status {error.status_code}: {error}",
            action.id,
            retryable=error.status_code in TRANSIENT_STATUS_CODES or error.status_code >= 500,
            status_code=error.status_code,
        )
    if isinstance(error, DriverTimeoutError):
        return NavigationFailedError(str(error), action.id, retryable=True)
    if isinstance(error, DriverActionError) and isinstance(action, ExtractAction):
        return ExtractionMismatchError(str(error), action.id)
    return UnknownJobError(str(error) or type(error).__name__, action.id, retryable=True)


def _unique_by_fingerprint(profiles):
    seen = set()
    unique = []
    for profile in profiles:
        if profile.fingerprint in seen:
            continue
        seen.add(profile.fingerprint)
        unique.append(profile)
    return unique
