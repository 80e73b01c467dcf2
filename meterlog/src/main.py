"""
Collector main loop and lifecycle.

Runs one sequential loop: fetch the meter reading, synchronise the auxiliary
readings, fold the resulting seconds into the rollup accumulator, then wait
``poll_interval_s`` on the shutdown event. The primary timestamp, not the
local clock, drives bucketing, so drift of the pause is harmless.

Before the loop the recovery loader rebuilds the running hour from today's
files (live mode only). Whatever ends the loop (end of offline input, a
SIGINT/SIGTERM, or a fatal error) cleanup runs in a single ``finally``
block: close the day files, log the energy sums so far and the event
counters, close the year files. A signal-triggered run then re-raises the
signal with its default action so the process exits with the expected
status; a fatal error exits with status 1.

Console logging is structured JSON; the year log file gets human-readable
lines (see writer.EventLogFormatter).

CHANGELOG:
- 2026-10-19: Sequential collector loop with recovery and guaranteed cleanup
- 2026-02-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import fileinput
import hashlib
import json
import logging
import os
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from meterlog.src.config import CollectorSettings, load_settings
from meterlog.src.fetcher import SourceFetcher, auxiliary_sources, meter_source
from meterlog.src.health import HealthWriter
from meterlog.src.models import SECONDS_PER_HOUR, CollectorContext, round_half_away
from meterlog.src.recovery import recover
from meterlog.src.replay import REPLAY_PV_SOURCE, ReplayFeed
from meterlog.src.rollup import RollupAccumulator
from meterlog.src.synchronizer import SampleSynchronizer
from meterlog.src.writer import OutputStreams

if TYPE_CHECKING:
    from meterlog.src.synchronizer import Feed

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stderr for the collector.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked(value: str | None) -> str:
    """Return a short non-reversible fingerprint of a secret for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: CollectorSettings) -> None:
    """Log a config summary at startup, masking the passwords."""
    logger.info(
        "Collector starting with config: "
        "meter_addr=%s, pv_addr=%s, chg_addr=%s, dis_addr=%s, dtu_addr=%s, "
        "dtu_serial=%s, out_basename=%s, time_zone=%s, poll_interval_s=%s, "
        "http_timeout_s=%s, meter_user=%s, meter_pass_masked=%s",
        settings.meter_addr,
        settings.pv_addr or "-",
        settings.chg_addr or "-",
        settings.dis_addr or "-",
        settings.dtu_addr or "-",
        settings.dtu_serial or "-",
        settings.out_basename,
        settings.time_zone,
        settings.poll_interval_s,
        settings.http_timeout_s,
        settings.meter_user or "-",
        _masked(settings.meter_pass),
    )


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


async def _process_once(sync: SampleSynchronizer, rollup: RollupAccumulator) -> bool:
    """Run one fetch-and-process cycle.

    Returns:
        False when the feed is exhausted or shutdown interrupted the fetch.
    """
    samples = await sync.next_samples()
    if samples is None:
        return False
    for sample in samples:
        rollup.process(sample)
    return True


async def run_loop(
    *,
    sync: SampleSynchronizer,
    rollup: RollupAccumulator,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run cycles until the feed ends or shutdown_event is set.

    Args:
        sync: Synchronizer producing the samples of each tick.
        rollup: Accumulator consuming them.
        poll_interval_s: Pause after each cycle (0 for offline input).
        shutdown_event: Event to signal graceful shutdown.
    """
    while not shutdown_event.is_set():
        if not await _process_once(sync, rollup):
            break
        if poll_interval_s > 0:
            # Use wait with timeout so we can check shutdown between sleeps
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_s)


def cleanup(ctx: CollectorContext, health: HealthWriter | None = None) -> None:
    """Close all outputs after logging the hour sums and event counters."""
    ctx.streams.close_day()
    sums = {
        name: round_half_away(value / SECONDS_PER_HOUR)
        for name, value in (
            ("consumed", ctx.hour.consumed),
            ("produced", ctx.hour.produced),
            ("charged", ctx.hour.charged),
            ("discharged", ctx.hour.discharged),
            ("own use", ctx.hour.own_used),
            ("balance", ctx.hour.balance),
            ("imported", ctx.hour.imported),
            ("exported", ctx.hour.exported),
        )
    }
    logger.info(
        "energy sums in Wh so far last hour: %s",
        ", ".join(f"{name} {value}" for name, value in sums.items()),
    )
    c = ctx.counters
    logger.info(
        "end after %d seconds, %d gaps, %d PV data misses, %d charger data misses, "
        "%d discharge switch data misses, %d discharge inverter data misses, "
        "%d substitutions, %d duplicates, %d backward steps",
        c.seconds,
        c.gaps,
        c.misses["pv"],
        c.misses["charger"],
        c.misses["discharge_switch"],
        c.misses["discharge_inverter"],
        c.substitutions,
        c.duplicates,
        c.backward_steps,
    )
    if health is not None:
        health.update(c, ctx.last_good.timestamp)
    ctx.streams.close_year()


async def run_collector(
    settings: CollectorSettings,
    *,
    shutdown_event: asyncio.Event,
    inputs: Sequence[str] = (),
    client: httpx.AsyncClient | None = None,
) -> CollectorContext:
    """Set up the context, recover, run the loop, and always clean up.

    Args:
        settings: Validated configuration.
        shutdown_event: Set by the signal handlers.
        inputs: Offline input files (stdin when empty), offline mode only.
        client: HTTP client to use instead of a fresh one (tests).

    Returns:
        The context of the finished run.
    """
    tz = settings.zone
    ctx = CollectorContext(settings=settings, tz=tz, streams=OutputStreams(settings, tz))
    health = HealthWriter(settings.health_path) if settings.health_path else None
    ctx.streams.open_log(datetime.now(tz=tz).year)

    try:
        async with contextlib.AsyncExitStack() as stack:
            feed: Feed
            if settings.offline:
                lines = stack.enter_context(
                    fileinput.FileInput(files=list(inputs) or ("-",), encoding="utf-8")
                )
                feed = ReplayFeed(lines, datetime_format=settings.datetime_format, tz=tz)
                sources = [REPLAY_PV_SOURCE]
                poll_interval_s = 0.0
            else:
                if client is None:
                    client = await stack.enter_async_context(
                        httpx.AsyncClient(timeout=settings.http_timeout_s)
                    )
                meter = meter_source(settings)
                sources = auxiliary_sources(settings)
                logger.info(
                    "start - will connect to %s",
                    " and ".join([meter.url, *(source.url for source in sources)]),
                )
                feed = SourceFetcher(client, meter=meter, tz=tz, shutdown_event=shutdown_event)
                poll_interval_s = settings.poll_interval_s
                if settings.out_load_sec:
                    recover(ctx, datetime.now(tz=tz))
                else:
                    logger.warning(
                        "as no per-second load file name is defined, "
                        "cannot recover earlier data for the current hour"
                    )

            await run_loop(
                sync=SampleSynchronizer(ctx, feed, sources),
                rollup=RollupAccumulator(ctx, health),
                poll_interval_s=poll_interval_s,
                shutdown_event=shutdown_event,
            )
    except Exception as exc:
        logger.critical("aborting on fatal error: %s", exc, exc_info=True)
        raise
    finally:
        cleanup(ctx, health)
    return ctx


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def _handle_signal(
    shutdown_event: asyncio.Event, sig: signal.Signals, received: list[signal.Signals]
) -> None:
    """Handle SIGTERM/SIGINT by recording the signal and setting the shutdown event."""
    logger.info("aborting on signal %s", sig.name)
    received.append(sig)
    shutdown_event.set()


async def async_main(
    settings: CollectorSettings, inputs: Sequence[str], received: list[signal.Signals]
) -> None:
    """Async entrypoint: install signal handlers and run the collector."""
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, shutdown_event, sig, received)
    await run_collector(settings, shutdown_event=shutdown_event, inputs=inputs)


def main(argv: Sequence[str] | None = None) -> None:
    """Synchronous entrypoint for the collector."""
    configure_logging()
    try:
        settings, inputs = load_settings(argv)
    except (ValidationError, ValueError) as exc:
        logger.error("invalid configuration: %s", exc)
        sys.exit(2)
    logging.getLogger().setLevel(settings.log_level)
    log_config_summary(settings)

    received: list[signal.Signals] = []
    try:
        asyncio.run(async_main(settings, inputs, received))
    except Exception:
        # Already logged and cleaned up by run_collector.
        sys.exit(1)

    if received:
        sig = received[0]
        signal.signal(sig, signal.SIG_DFL)
        os.kill(os.getpid(), sig)


if __name__ == "__main__":
    main()
