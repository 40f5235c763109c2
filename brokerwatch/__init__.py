"""brokerwatch: scans people-search sites for a profile and submits opt-out requests."""

__version__ = "1.0.0"
