"""Broker definition registry: loading bundled definitions and reconciling them."""

from .loader import (
    BrokerDefinitionError,
    BrokerLoadResult,
    load_broker_definitions,
    load_broker_file,
    parse_broker_definition,
)
from .templating import TemplateRenderError, render_template, select_age_range
from .updater import BrokerUpdater, BrokerUpdateResult

__all__ = [
    # Loading
    "BrokerDefinitionError",
    "BrokerLoadResult",
    "load_broker_definitions",
    "load_broker_file",
    "parse_broker_definition",
    # Templating
    "TemplateRenderError",
    "render_template",
    "select_age_range",
    # Reconciliation
    "BrokerUpdater",
    "BrokerUpdateResult",
]
