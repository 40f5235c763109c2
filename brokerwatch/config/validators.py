"""Non-fatal configuration checks."""

import warnings
from typing import Any, Dict, List

LARGE_QUERY_COUNT = 50


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """Inspect the raw configuration for settings that work but look unintended.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    messages = []

    profile = config_dict.get("profile") or {}
    if isinstance(profile, dict):
        names = profile.get("names") or []
        addresses = profile.get("addresses") or []
        if isinstance(names, list) and isinstance(addresses, list):
            permutations = len(names) * len(addresses)
            if permutations > LARGE_QUERY_COUNT:
                messages.append(
                    f"Profile expands to {permutations} queries per broker; "
                    "scans will take a long time"
                )

    engine = config_dict.get("engine") or {}
    if isinstance(engine, dict):
        pacing = engine.get("pacing_delay_seconds")
        if isinstance(pacing, (int, float)) and pacing == 0:
            messages.append("pacing_delay_seconds is 0; broker sites may throttle requests")
        if engine.get("max_retries") == 0:
            messages.append("max_retries is 0; any transient failure fails the job")

    services = config_dict.get("services") or {}
    if isinstance(services, dict):
        if not services.get("captcha_base_url"):
            messages.append("No captcha_base_url configured; captcha steps will fail")
        if not services.get("email_base_url"):
            messages.append(
                "No email_base_url configured; form steps that need an email are left out of opt-outs"
            )

    scheduling = config_dict.get("scheduling") or {}
    if isinstance(scheduling, dict):
        concurrency = scheduling.get("max_concurrency")
        if isinstance(concurrency, int) and concurrency > 8:
            messages.append(
                f"max_concurrency of {concurrency} runs many browser sessions at once"
            )

    return messages


def emit_warnings(warning_messages: List[str]) -> None:
    """Emit each message through ``warnings.warn`` as a UserWarning."""
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
