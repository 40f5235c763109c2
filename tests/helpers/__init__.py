"""Test helpers: scripted driver, fake services and builders."""

from .drivers import DriverPool, ScriptedDriver
from .factories import (
    FrozenClock,
    fast_engine_config,
    listing,
    make_app_config,
    make_broker,
    make_query,
    seed_vault,
)
from .services import FakeCaptchaService, FakeEmailService, RecordingHooks

__all__ = [
    "FrozenClock",
    "ScriptedDriver",
    "DriverPool",
    "FakeCaptchaService",
    "FakeEmailService",
    "RecordingHooks",
    "make_broker",
    "make_query",
    "make_app_config",
    "fast_engine_config",
    "listing",
    "seed_vault",
]
