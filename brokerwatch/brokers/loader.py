"""Load bundled broker definitions from a directory of JSON files.

Each ``*.json`` file describes one broker in the camelCase format the broker
files are published in::

    {
      "name": "Example", "url": "example.com", "version": "1.0.2",
      "parent": "parent.com",
      "addedDatetime": 1677128400000,
      "steps": [
        {"stepType": "scan", "scanType": "templatedUrl", "actions": [...]},
        {"stepType": "optOut", "optOutType": "formOptOut", "actions": [...]}
      ],
      "schedulingConfig": {"retryError": 48, "confirmOptOutScan": 72,
                           "maintenanceScan": 120, "maxAttempts": -1}
    }

A file that cannot be read, decoded or validated is reported in the result and
skipped; it never prevents the remaining files from loading.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from brokerwatch.domain.actions import parse_actions
from brokerwatch.domain.models import DataBroker, SchedulingConfig
from brokerwatch.logging import get_logger
from brokerwatch.utils.timestamps import from_epoch_millis

logger = get_logger(__name__, component="brokers")

SCAN_STEP = "scan"
OPT_OUT_STEP = "optOut"

_SCHEDULING_KEYS = {
    "retryError": "retry_error_hours",
    "confirmOptOutScan": "confirm_opt_out_hours",
    "maintenanceScan": "maintenance_scan_hours",
    "maxAttempts": "max_attempts",
}


class BrokerDefinitionError(Exception):
    """Raised when one broker definition file cannot be turned into a DataBroker.

    Attributes:
        path: File the definition came from
        reason: Human-readable description of what is wrong
    """

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


@dataclass
class BrokerLoadResult:
    """Outcome of loading a definitions directory.

    Attributes:
        brokers: Successfully parsed definitions, in file-name order
        failures: One error per file that was skipped
    """

    brokers: List[DataBroker] = field(default_factory=list)
    failures: List[BrokerDefinitionError] = field(default_factory=list)

    @property
    def had_failures(self) -> bool:
        return bool(self.failures)


def parse_broker_definition(payload: Dict[str, Any], source: str = "<memory>") -> DataBroker:
    """Convert one decoded broker JSON document into a DataBroker.

    Args:
        payload: Decoded JSON object
        source: Where the payload came from, used in error messages

    Returns:
        Validated DataBroker (without a vault id)

    Raises:
        BrokerDefinitionError: If required keys are missing or any part fails validation
    """
    if not isinstance(payload, dict):
        raise BrokerDefinitionError(source, "top-level JSON value must be an object")

    name = payload.get("name")
    if not name:
        raise BrokerDefinitionError(source, "missing 'name'")

    steps = payload.get("steps") or []
    if not isinstance(steps, list):
        raise BrokerDefinitionError(source, "'steps' must be a list")

    scan_actions: List[Dict[str, Any]] = []
    opt_out_actions: List[Dict[str, Any]] = []
    for index, step in enumerate(steps):
        step_type = step.get("stepType") if isinstance(step, dict) else None
        if step_type == SCAN_STEP:
            collected = scan_actions
        elif step_type == OPT_OUT_STEP:
            collected = opt_out_actions
        else:
            raise BrokerDefinitionError(source, f"step {index} has unknown stepType {step_type!r}")

        actions = step.get("actions") or []
        if not isinstance(actions, list):
            raise BrokerDefinitionError(source, f"step {index} 'actions' must be a list")
        collected.extend(actions)

    if not scan_actions:
        raise BrokerDefinitionError(source, "no scan step with actions")

    scheduling = None
    raw_scheduling = payload.get("schedulingConfig")
    if raw_scheduling:
        if not isinstance(raw_scheduling, dict):
            raise BrokerDefinitionError(source, "'schedulingConfig' must be an object")
        scheduling = {
            target: raw_scheduling[key]
            for key, target in _SCHEDULING_KEYS.items()
            if key in raw_scheduling
        }

    try:
        added_at = from_epoch_millis(payload.get("addedDatetime"))
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise BrokerDefinitionError(source, f"invalid addedDatetime: {e}") from e

    try:
        return DataBroker(
            name=name,
            url=payload.get("url") or name,
            version=str(payload.get("version", "")),
            scan_script=parse_actions(scan_actions),
            opt_out_script=parse_actions(opt_out_actions),
            parent_url=payload.get("parent") or None,
            scheduling=SchedulingConfig(**scheduling) if scheduling is not None else None,
            added_at=added_at,
        )
    except ValidationError as e:
        reasons = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise BrokerDefinitionError(source, reasons) from e


def load_broker_file(path: Path) -> DataBroker:
    """Read and parse a single broker definition file.

    Raises:
        BrokerDefinitionError: If the file cannot be read, decoded or validated
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except OSError as e:
        raise BrokerDefinitionError(path, f"cannot read file: {e}") from e
    except json.JSONDecodeError as e:
        raise BrokerDefinitionError(path, f"invalid JSON at line {e.lineno}: {e.msg}") from e

    return parse_broker_definition(payload, source=str(path))


def load_broker_definitions(directory: Union[str, Path]) -> BrokerLoadResult:
    """Load every ``*.json`` broker definition in ``directory``.

    Args:
        directory: Directory containing broker definition files

    Returns:
        BrokerLoadResult with the parsed brokers and the per-file failures
    """
    directory = Path(directory)
    result = BrokerLoadResult()

    if not directory.is_dir():
        logger.warning(
            f"Broker definitions directory not found: {directory}",
            extra={"event": "brokers.directory_missing", "path": str(directory)},
        )
        return result

    seen_urls = set()
    for path in sorted(directory.glob("*.json")):
        try:
            try:
                broker = load_broker_file(path)
            except (TypeError, ValueError) as e:
                raise BrokerDefinitionError(path, f"malformed definition: {e}") from e
        except BrokerDefinitionError as e:
            logger.error(
                f"Skipping broker definition {path.name}: {e.reason}",
                extra={"event": "brokers.definition_invalid", "path": str(path)},
            )
            result.failures.append(e)
            continue

        if broker.url in seen_urls:
            error = BrokerDefinitionError(path, f"duplicate broker url {broker.url}")
            logger.error(
                f"Skipping broker definition {path.name}: {error.reason}",
                extra={"event": "brokers.definition_duplicate", "path": str(path)},
            )
            result.failures.append(error)
            continue

        seen_urls.add(broker.url)
        result.brokers.append(broker)

    logger.info(
        f"Loaded {len(result.brokers)} broker definitions ({len(result.failures)} skipped)",
        extra={
            "event": "brokers.definitions_loaded",
            "loaded_count": len(result.brokers),
            "failed_count": len(result.failures),
        },
    )
    return result
