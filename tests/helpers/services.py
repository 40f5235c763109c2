"""In-memory captcha/email services and hook recorder."""

import time
from typing import Any, Dict, List, Optional, Tuple

from brokerwatch.notifications.hooks import OutboundHooks
from brokerwatch.services.captcha import CaptchaService
from brokerwatch.services.email import EmailService


class FakeCaptchaService(CaptchaService):
    def __init__(self, token: str = "captcha-token", errors: Optional[List[Exception]] = None):
        self.token = token
        self.errors = list(errors or [])
        self.submitted: List[Tuple[Dict[str, Any], str]] = []

    def submit(self, captcha_info: Dict[str, Any], site_url: str) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.submitted.append((captcha_info, site_url))
        return f"tx-{len(self.submitted)}"

    def fetch_solution(self, transaction_id: str) -> str:
        return self.token


class FakeEmailService(EmailService):
    def __init__(
        self,
        address: str = "jane.doe.123@relay.example.net",
        link: str = "https://example.com/confirm?token=abc",
        link_delay: float = 0,
    ):
        self.address = address
        self.link = link
        self.link_delay = link_delay
        self.generated_for: List[str] = []
        self.confirmed: List[str] = []
        self.poll_intervals: List[Optional[float]] = []

    def generate_email(self, broker_url: str) -> str:
        self.generated_for.append(broker_url)
        return self.address

    def fetch_confirmation_link(self, email_address: str, poll_interval: Optional[float] = None) -> str:
        self.poll_intervals.append(poll_interval)
        if self.link_delay:
            time.sleep(self.link_delay)
        self.confirmed.append(email_address)
        return self.link


class RecordingHooks(OutboundHooks):
    """Records every hook call as (name, args)."""

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []

    def on_scan_completed(self, broker_id: int, match_count: int) -> None:
        self.calls.append(("on_scan_completed", (broker_id, match_count)))

    def on_first_match_found(self) -> None:
        self.calls.append(("on_first_match_found", ()))

    def on_first_profile_removed(self) -> None:
        self.calls.append(("on_first_profile_removed", ()))

    def on_all_profiles_removed(self) -> None:
        self.calls.append(("on_all_profiles_removed", ()))

    def on_error(self, kind: str, context: Dict[str, Any]) -> None:
        self.calls.append(("on_error", (kind, context)))

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def args_of(self, name: str) -> List[tuple]:
        return [args for call, args in self.calls if call == name]
