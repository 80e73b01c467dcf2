"""
Offline input mode: replay pre-recorded per-second rows instead of polling.

Rows have the form ``time,load,pv,phaseA,phaseB,phaseC`` (as exported from
Home Assistant), read from files or stdin. ``load`` must equal
``pv + phaseA + phaseB + phaseC`` within 0.01 W; inconsistencies are logged.
The meter power of a row is the sum of its phases.

When the input for a day stops before ``23:59:59`` the last row of that day
is repeated at ``23:59:59`` so the day's last hour is closed.

:class:`ReplayFeed` offers the same ``fetch_primary``/``fetch_auxiliary``
interface as the live fetcher, so the synchronizer is unaware of the mode.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from datetime import datetime, time
from typing import TYPE_CHECKING

from meterlog.src.fetcher import Source
from meterlog.src.models import Reading, SourceKind

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

CONSISTENCY_TOLERANCE_W = 0.01

_END_OF_DAY = time(23, 59, 59)

REPLAY_PV_SOURCE = Source(kind=SourceKind.PV)
"""Pseudo-source answering with the PV column of the current row."""


@dataclass(frozen=True, slots=True)
class ReplayRow:
    """One parsed input row."""

    when: datetime
    load: float
    pv_power: float
    phases: tuple[float, float, float]

    @property
    def timestamp(self) -> int:
        return int(self.when.timestamp())


def parse_row(line: str, *, datetime_format: str, tz: ZoneInfo) -> ReplayRow | None:
    """Parse one input line, or return ``None`` (logged) if it is not a row."""
    line = line.rstrip("\r\n")
    elems = line.split(",")
    if len(elems) != 6:
        logger.info("ignoring input line: %s", line)
        return None
    stamp, load, pv, ph_a, ph_b, ph_c = elems
    try:
        when = datetime.strptime(stamp.strip(), datetime_format).replace(tzinfo=tz)
        row = ReplayRow(
            when=when,
            load=float(load),
            pv_power=float(pv),
            phases=(float(ph_a), float(ph_b), float(ph_c)),
        )
    except ValueError:
        logger.info("ignoring input line: %s", line)
        return None

    total = row.pv_power + sum(row.phases)
    if abs(row.load - total) > CONSISTENCY_TOLERANCE_W:
        logger.warning(
            "at %s, load %s is not consistent with %7.2f = sum of phases "
            "%s + %s + %s and PV production %s",
            stamp,
            load,
            total,
            ph_a,
            ph_b,
            ph_c,
            pv,
        )
    return row


def iter_rows(
    lines: Iterable[str], *, datetime_format: str, tz: ZoneInfo
) -> Iterator[ReplayRow]:
    """Yield parsed rows, closing days that end before ``23:59:59``."""
    prev: ReplayRow | None = None
    for line in lines:
        row = parse_row(line, datetime_format=datetime_format, tz=tz)
        if row is None:
            continue
        if prev is not None and row.when.date() != prev.when.date():
            filler = _end_of_day_filler(prev)
            if filler is not None:
                yield filler
        yield row
        prev = row
    if prev is not None:
        filler = _end_of_day_filler(prev)
        if filler is not None:
            yield filler


def _end_of_day_filler(row: ReplayRow) -> ReplayRow | None:
    if row.when.time() == _END_OF_DAY:
        return None
    last = datetime.combine(row.when.date(), _END_OF_DAY, tzinfo=row.when.tzinfo)
    return replace(row, when=last)


class ReplayFeed:
    """Serves recorded rows through the fetcher interface.

    Args:
        lines: Input lines (files or stdin).
        datetime_format: strftime pattern of the row time stamps.
        tz: Zone the row time stamps are expressed in.
    """

    def __init__(self, lines: Iterable[str], *, datetime_format: str, tz: ZoneInfo) -> None:
        self._rows = iter_rows(lines, datetime_format=datetime_format, tz=tz)
        self._current: ReplayRow | None = None

    async def fetch_primary(self) -> Reading | None:
        """Return the next row as a meter reading, or ``None`` at end of input."""
        self._current = next(self._rows, None)
        if self._current is None:
            return None
        row = self._current
        return Reading(
            kind=SourceKind.METER,
            timestamp=row.timestamp,
            power=sum(row.phases),
            phases=row.phases,
        )

    async def fetch_auxiliary(self, source: Source) -> Reading | None:
        """Return the current row's PV power; other sources have no data."""
        if self._current is None or source.kind is not SourceKind.PV:
            return None
        return Reading(
            kind=SourceKind.PV,
            timestamp=self._current.timestamp,
            power=self._current.pv_power,
        )
