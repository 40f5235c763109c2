"""Outbound hooks and one-shot milestones."""

from .hooks import LoggingHooks, OutboundHooks, call_hook
from .milestones import Milestone, MilestoneGuard

__all__ = [
    "OutboundHooks",
    "LoggingHooks",
    "call_hook",
    "Milestone",
    "MilestoneGuard",
]
