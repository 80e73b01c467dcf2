"""
Shared test fixtures for the meter collector tests.

All collector env vars are cleaned before each test to ensure isolation, and
the working directory is moved to tmp_path so no .env file is picked up.

CHANGELOG:
- 2026-10-19: Collector settings, context and sample fixtures
- 2026-02-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from meterlog.src.config import POSITIONAL_FIELDS, CollectorSettings
from meterlog.src.models import CollectorContext
from meterlog.src.writer import PACKAGE_LOGGER, OutputStreams

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = tuple(name.upper() for name in POSITIONAL_FIELDS) + (
    "DATE_FORMAT",
    "TIME_FORMAT",
    "DATE_TIME_SEP",
    "POLL_INTERVAL_S",
    "HTTP_TIMEOUT_S",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all collector env vars and isolate from .env files before each test."""
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def _detach_log_handlers() -> Iterator[None]:
    """Drop year log handlers a test left on the package logger."""
    yield
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones)."""
    env = {"METER_ADDR": "192.168.178.100"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


def make_settings(tmp_path: Path, **overrides: object) -> CollectorSettings:
    """Settings writing every output category below *tmp_path*."""
    values: dict[str, object] = {
        "out_basename": f"{tmp_path}/3EM_",
        "out_power": "power",
        "out_energy": "energy",
        "out_load_min": "load_min",
        "out_load_sec": "load_sec",
        "out_status": "status",
        "out_pvstat": "pvstat",
        "out_chgstat": "chgstat",
        "out_disstat": "disstat",
        "out_log": "log",
        "time_zone": "UTC",
        "meter_addr": "192.168.178.100",
    }
    values.update(overrides)
    return CollectorSettings(**values)


@pytest.fixture()
def settings(tmp_path: Path) -> CollectorSettings:
    return make_settings(tmp_path)


def make_context(settings: CollectorSettings) -> CollectorContext:
    tz = settings.zone
    return CollectorContext(settings=settings, tz=tz, streams=OutputStreams(settings, tz))


@pytest.fixture()
def ctx(settings: CollectorSettings) -> Iterator[CollectorContext]:
    context = make_context(settings)
    yield context
    context.streams.close_day()
    context.streams.close_year()


@pytest.fixture()
def settings_factory(tmp_path: Path) -> Callable[..., CollectorSettings]:
    """Build settings below tmp_path with the given overrides."""

    def _factory(**overrides: object) -> CollectorSettings:
        return make_settings(tmp_path, **overrides)

    return _factory


@pytest.fixture()
def context_factory() -> Iterator[Callable[[CollectorSettings], CollectorContext]]:
    """Build contexts for the given settings, closing their streams afterwards."""
    created: list[CollectorContext] = []

    def _factory(settings: CollectorSettings) -> CollectorContext:
        context = make_context(settings)
        created.append(context)
        return context

    yield _factory
    for context in created:
        context.streams.close_day()
        context.streams.close_year()
