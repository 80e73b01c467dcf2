"""
HTTP fetcher for the primary meter and the auxiliary power endpoints.

Issues one bounded-timeout GET per source and returns either a typed
:class:`~meterlog.src.models.Reading` or a classified
:class:`~meterlog.src.models.FetchFailure`; no exception crosses the
per-request boundary. Two retry policies sit on top:

- the primary meter is mandatory: :meth:`SourceFetcher.fetch_primary` retries
  until it gets a reading (timeouts immediately, other failures after a one
  second pause) or shutdown is requested;
- auxiliary sources get a single attempt per second:
  :meth:`SourceFetcher.fetch_auxiliary` returns ``None`` on failure so the
  loop never stalls on an optional device.

CHANGELOG:
- 2026-10-19: Approximate a missing meter unixtime from the device uptime
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from meterlog.src.models import FailureKind, FetchFailure, Reading, SourceKind
from meterlog.src.normalizer import (
    ShapeMismatch,
    parse_inverter,
    parse_meter,
    parse_switch,
)

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from meterlog.src.config import CollectorSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RETRY_DELAY_S: float = 1.0
"""Pause before retrying the meter after a non-timeout failure."""

METER_EXCERPT_CHARS: int = 1100
"""Logged prefix of an unparseable meter response (typically ~1020 chars)."""

AUX_EXCERPT_CHARS: int = 800
"""Logged prefix of an unparseable switch/inverter response (~710 chars)."""

CLOCK_TOLERANCE_S: int = 3
"""Device vs. host clock difference tolerated on the first reading."""

_PROXY_ERROR_RE = re.compile(r"ERROR:\s?([\s0-9A-Za-z]*)", re.IGNORECASE)

_LABELS: dict[SourceKind, str] = {
    SourceKind.METER: "3EM",
    SourceKind.PV: "PV",
    SourceKind.CHARGER: "charger",
    SourceKind.DISCHARGE_SWITCH: "discharge switch",
    SourceKind.DISCHARGE_INVERTER: "discharge inverter",
}


# ---------------------------------------------------------------------------
# Source definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Source:
    """One polled endpoint.

    Attributes:
        kind: Device role.
        url: Full status URL (empty for offline pseudo-sources).
        user: HTTP Basic user, empty for none.
        password: HTTP Basic password, empty for none.
        serial: Inverter serial, discharge inverter only.
    """

    kind: SourceKind
    url: str = ""
    user: str = ""
    password: str = ""
    serial: str = ""

    @property
    def label(self) -> str:
        return _LABELS[self.kind]

    @property
    def auth(self) -> httpx.BasicAuth | None:
        if self.user or self.password:
            return httpx.BasicAuth(self.user, self.password)
        return None

    @property
    def excerpt_chars(self) -> int:
        return METER_EXCERPT_CHARS if self.kind is SourceKind.METER else AUX_EXCERPT_CHARS


def meter_source(settings: CollectorSettings) -> Source:
    return Source(
        kind=SourceKind.METER,
        url=f"http://{settings.meter_addr}/status",
        user=settings.meter_user,
        password=settings.meter_pass,
    )


def auxiliary_sources(settings: CollectorSettings) -> list[Source]:
    """Build the configured auxiliary sources in polling order."""
    sources: list[Source] = []
    switches = (
        (SourceKind.PV, settings.pv_addr, settings.pv_user, settings.pv_pass),
        (SourceKind.CHARGER, settings.chg_addr, settings.chg_user, settings.chg_pass),
        (
            SourceKind.DISCHARGE_SWITCH,
            settings.dis_addr,
            settings.dis_user,
            settings.dis_pass,
        ),
    )
    for kind, addr, user, password in switches:
        if addr:
            sources.append(
                Source(
                    kind=kind,
                    url=f"http://{addr}/rpc/Shelly.GetStatus",
                    user=user,
                    password=password,
                )
            )
    if settings.dtu_addr:
        sources.append(
            Source(
                kind=SourceKind.DISCHARGE_INVERTER,
                url=(
                    f"http://{settings.dtu_addr}/api/livedata/status"
                    f"?inv={settings.dtu_serial}"
                ),
                user=settings.dis_user,
                password=settings.dis_pass,
                serial=settings.dtu_serial,
            )
        )
    return sources


# ---------------------------------------------------------------------------
# Single request
# ---------------------------------------------------------------------------


def _parse(source: Source, data: object) -> Reading:
    if source.kind is SourceKind.METER:
        return parse_meter(data)
    if source.kind is SourceKind.DISCHARGE_INVERTER:
        return parse_inverter(data, source.serial)
    return parse_switch(data, source.kind)


def _failure(source: Source, kind: FailureKind, detail: str) -> FetchFailure:
    return FetchFailure(kind=kind, source=source.kind, detail=detail)


async def fetch_once(client: httpx.AsyncClient, source: Source) -> Reading | FetchFailure:
    """Fetch and parse one status document.

    Args:
        client: Shared HTTP client (its timeout bounds the request).
        source: Endpoint to query.

    Returns:
        The parsed reading, or a failure classified as ``timeout``,
        ``transient-network``, ``malformed-response`` or ``parse-mismatch``.
        Every failure is logged as a warning.
    """
    try:
        response = await client.get(source.url, auth=source.auth)
    except httpx.TimeoutException as exc:
        logger.warning("%s for %s", str(exc) or "read timeout", source.label)
        return _failure(source, FailureKind.TIMEOUT, str(exc))
    except httpx.TransportError as exc:
        logger.warning("%s for %s", str(exc) or type(exc).__name__, source.label)
        return _failure(source, FailureKind.TRANSIENT_NETWORK, str(exc))

    text = response.text
    shown = text[: source.excerpt_chars]

    if not response.is_success:
        logger.warning(
            "HTTP status %d for %s: '%s'", response.status_code, source.label, shown
        )
        return _failure(source, FailureKind.MALFORMED_RESPONSE, shown)

    proxy_error = _PROXY_ERROR_RE.search(text)
    if proxy_error:
        # e.g. "The requested URL could not be retrieved" from a proxy
        logger.warning(
            "skipping error response: %s for %s", proxy_error.group(1), source.label
        )
        return _failure(source, FailureKind.MALFORMED_RESPONSE, shown)

    try:
        data = response.json()
    except ValueError:
        logger.warning("non-JSON %s status response '%s'", source.label, shown)
        return _failure(source, FailureKind.MALFORMED_RESPONSE, shown)

    try:
        return _parse(source, data)
    except (ValidationError, ShapeMismatch) as exc:
        logger.warning(
            "error parsing %s status response '%s': %s",
            source.label,
            shown,
            exc.errors()[0]["msg"] if isinstance(exc, ValidationError) else exc,
        )
        return _failure(source, FailureKind.PARSE_MISMATCH, shown)


# ---------------------------------------------------------------------------
# Retry policies
# ---------------------------------------------------------------------------


class SourceFetcher:
    """Fetches the mandatory meter with retries and optional sources once.

    Args:
        client: Shared HTTP client.
        meter: The primary meter source.
        tz: Time zone used for the first-reading clock check.
        shutdown_event: Set on shutdown; ends the meter retry loop.
        retry_delay_s: Pause before retrying after a non-timeout failure.
        clock: Host clock, injectable for tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        meter: Source,
        tz: ZoneInfo,
        shutdown_event: asyncio.Event | None = None,
        retry_delay_s: float = RETRY_DELAY_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._meter = meter
        self._tz = tz
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._retry_delay_s = retry_delay_s
        self._clock = clock
        self._last_valid_unixtime: int = 0
        self._uptime_at_last_valid: int = 0
        self._clock_checked = False

    async def fetch_primary(self) -> Reading | None:
        """Return the next meter reading, retrying for as long as needed.

        Returns:
            A reading with a timestamp, or ``None`` once shutdown was requested.
        """
        while not self._shutdown_event.is_set():
            result = await fetch_once(self._client, self._meter)
            if isinstance(result, FetchFailure):
                if result.kind is not FailureKind.TIMEOUT:
                    await self._pause()
                continue

            reading = self._complete_timestamp(result)
            if reading is None:
                await self._pause()
                continue

            if not self._clock_checked:
                self._check_clock(reading)
                self._clock_checked = True
            return reading
        return None

    async def fetch_auxiliary(self, source: Source) -> Reading | None:
        """Make one attempt at *source*; ``None`` means no data this second."""
        result = await fetch_once(self._client, source)
        if isinstance(result, FetchFailure):
            return None
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _complete_timestamp(self, reading: Reading) -> Reading | None:
        """Fill in a missing meter timestamp from the uptime counter."""
        uptime = reading.uptime or 0
        if reading.timestamp:
            self._last_valid_unixtime = reading.timestamp
            self._uptime_at_last_valid = uptime
            return reading
        if self._last_valid_unixtime and uptime >= self._uptime_at_last_valid:
            approx = self._last_valid_unixtime + uptime - self._uptime_at_last_valid
            logger.warning(
                "approximating missing 3EM status unixtime from last valid one "
                "%d + uptime difference %d",
                self._last_valid_unixtime,
                uptime - self._uptime_at_last_valid,
            )
            return reading.model_copy(update={"timestamp": approx})
        logger.warning("missing 3EM status unixtime, discarding response")
        return None

    def _check_clock(self, reading: Reading) -> None:
        now = self._clock()
        assert reading.timestamp is not None
        if abs(reading.timestamp - now) > CLOCK_TOLERANCE_S:
            logger.warning(
                "3EM status unixtime %d does not closely match host system time %d",
                reading.timestamp,
                int(now),
            )
        host_clock = datetime.fromtimestamp(now, tz=self._tz).strftime("%H:%M")
        if reading.clock and reading.clock != host_clock:
            logger.warning(
                "3EM status time '%s' does not equal '%s'", reading.clock, host_clock
            )

    async def _pause(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                self._shutdown_event.wait(),
                timeout=self._retry_delay_s,
            )
