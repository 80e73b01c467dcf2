"""
Recovery loader: rebuild the running hour after a restart.

The per-second load file holds one line per hour: the date-time stamp of the
line's first second followed by one integer load per second (an empty field
for a second whose load was substituted or interpolated). On startup the
last line of today's file is read and every second is replayed through the
same accumulation as live samples, without writing any output, so the hour
totals continue as if the process had never stopped.

PV, charger and discharge powers come from the per-second status files of
the same day, read forward from the first row at or after the line's stamp.
A count mismatch is logged and the uncovered seconds use zero.

The meter power of each second comes from the meter status file, so the
balance, import and export sums see the measured value even for seconds
whose load was substituted. A substituted second (empty load field with a
non-positive load derived from the status files) repeats the previous load,
as the live run did; other empty fields are interpolated. Without a meter
status file the meter power is derived from the load.

Line stamps are read with ``fold=0``: in a zone with DST, a line stamped in
the repeated fall-back hour is taken for the earlier occurrence.

Missing inputs only mean "start the hour from zero" (logged); malformed
content raises :class:`RecoveryError`.

CHANGELOG:
- 2026-10-19: Take the meter power from the meter status file
- 2026-10-19: Also recover charge and discharge power
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, time, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from meterlog.src.models import SECONDS_PER_HOUR, SECONDS_PER_MINUTE

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from meterlog.src.models import CollectorContext

logger = logging.getLogger(__name__)

_CANNOT_RECOVER = "cannot recover earlier data for the current hour"

METER_STATUS_COLUMN = 4
"""Field of the meter power (``total_power``) in a meter status row."""

_INT_RE = re.compile(r"^\s*-?\d+\s*$")


class RecoveryError(Exception):
    """Persisted output cannot be parsed; continuing would corrupt it."""


def _last_line(path: Path) -> str | None:
    last = None
    with path.open(encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                last = line
    return last.rstrip("\r\n") if last is not None else None


def parse_load_line(
    line: str, *, datetime_format: str, tz: ZoneInfo
) -> tuple[datetime, list[int | None]]:
    """Split a per-second load line into its stamp and per-second values.

    Raises:
        RecoveryError: On an unparseable stamp or value.
    """
    stamp_text, *fields = line.split(",")
    try:
        stamp = datetime.strptime(stamp_text, datetime_format).replace(tzinfo=tz)
    except ValueError as exc:
        raise RecoveryError(f"cannot parse date+time '{stamp_text}' in line '{line}'") from exc
    values: list[int | None] = []
    for field in fields:
        if not field.strip():
            values.append(None)
        elif _INT_RE.match(field):
            values.append(int(field))
        else:
            raise RecoveryError(f"cannot parse power value '{field}' in line '{line}'")
    return stamp, values


def fill_missing(values: list[int | None]) -> list[float]:
    """Linearly interpolate empty fields between their known neighbours.

    Leading empties take the first known value, trailing ones the last; a
    line without any known value yields zeros.
    """
    known = [i for i, v in enumerate(values) if v is not None]
    if not known:
        return [0.0] * len(values)
    filled: list[float] = [float(v) if v is not None else 0.0 for v in values]
    for i in range(known[0]):
        filled[i] = float(values[known[0]])  # type: ignore[arg-type]
    for i in range(known[-1] + 1, len(values)):
        filled[i] = float(values[known[-1]])  # type: ignore[arg-type]
    for lo, hi in zip(known, known[1:]):
        step = (filled[hi] - filled[lo]) / (hi - lo)
        for i in range(lo + 1, hi):
            filled[i] = filled[lo] + step * (i - lo)
    return filled


def read_status_powers(
    path: Path, start: time, time_format: str, column: int = 1
) -> list[float]:
    """Read the power *column* of a status file from *start* on.

    The first line is the header. Rows before *start* (earlier hours) are
    skipped; from the first row at or after *start* every row counts.

    Raises:
        RecoveryError: On a row whose time or power cannot be parsed.
    """
    powers: list[float] = []
    started = False
    with path.open(encoding="utf-8") as fh:
        next(fh, None)
        for line in fh:
            line = line.rstrip("\r\n")
            if not line:
                continue
            values = line.split(",")
            if len(values) <= column:
                raise RecoveryError(f"cannot parse line '{line}' of status file '{path}'")
            if not started:
                try:
                    row_time = datetime.strptime(values[0], time_format).time()
                except ValueError as exc:
                    raise RecoveryError(
                        f"cannot parse time '{values[0]}' of status file '{path}'"
                    ) from exc
                if row_time < start:
                    continue
                started = True
            try:
                powers.append(float(values[column]))
            except ValueError as exc:
                raise RecoveryError(
                    f"cannot parse power value '{values[column]}' in line '{line}' "
                    f"of status file '{path}'"
                ) from exc
    return powers


def _aux_powers(
    ctx: CollectorContext,
    label: str,
    configured: bool,
    out_name: str,
    period: str,
    start: datetime,
    count: int,
) -> list[float]:
    if not configured:
        return [0.0] * count
    path = ctx.streams.path_for(out_name, period)
    if path is None:
        logger.warning("as no %s status file name is defined, %s", label, _CANNOT_RECOVER)
        return [0.0] * count
    if not path.exists():
        logger.warning(
            "no previously produced %s status file '%s' found, so %s",
            label,
            path,
            _CANNOT_RECOVER,
        )
        return [0.0] * count
    powers = read_status_powers(path, start.time(), ctx.settings.time_format)
    if len(powers) != count:
        logger.warning(
            "for the time frame of the last line of the per-second load file, "
            "the count of %s power values in '%s': %d does not match the number "
            "of load values: %d",
            label,
            path,
            len(powers),
            count,
        )
    return (powers + [0.0] * count)[:count]


def _meter_powers(
    ctx: CollectorContext, period: str, start: datetime, count: int
) -> list[float | None]:
    """Measured meter powers, ``None`` where the status file has no row."""
    path = ctx.streams.path_for(ctx.settings.out_status, period)
    if path is None or not path.exists():
        logger.warning(
            "no meter status file for the current hour, deriving meter power from load"
        )
        return [None] * count
    powers: list[float | None] = list(
        read_status_powers(
            path, start.time(), ctx.settings.time_format, column=METER_STATUS_COLUMN
        )
    )
    if len(powers) != count:
        logger.warning(
            "for the time frame of the last line of the per-second load file, "
            "the count of meter power values in '%s': %d does not match the number "
            "of load values: %d",
            path,
            len(powers),
            count,
        )
    return (powers + [None] * count)[:count]


def _meter_at(
    meters: list[float | None],
    i: int,
    loads: list[float],
    pv: list[float],
    charge: list[float],
    discharge: list[float],
) -> float:
    measured = meters[i]
    if measured is not None:
        return measured
    return loads[i] - pv[i] + charge[i] - discharge[i]


def recover(ctx: CollectorContext, now: datetime) -> bool:
    """Rebuild the current hour's accumulators from today's output files.

    Args:
        ctx: Collector context; its hour accumulator, last-known-good state
            and ``recovered`` flag are updated.
        now: Current time in the collector's zone (selects today's files).

    Returns:
        True when the running hour was recovered.

    Raises:
        RecoveryError: If the persisted data is malformed.
    """
    settings = ctx.settings
    streams = ctx.streams
    period = streams.day_period(now.date())

    path = streams.path_for(settings.out_load_sec, period)
    if path is None:
        logger.warning("as no per-second load file name is defined, %s", _CANNOT_RECOVER)
        return False
    if not path.exists():
        logger.warning(
            "no previously produced per-second load file '%s' found, so %s",
            path,
            _CANNOT_RECOVER,
        )
        return False
    line = _last_line(path)
    if line is None:
        logger.warning("empty per-second load file '%s', so %s", path, _CANNOT_RECOVER)
        return False

    stamp, raw = parse_load_line(line, datetime_format=settings.datetime_format, tz=ctx.tz)
    count = len(raw)
    seconds_left = SECONDS_PER_HOUR - (stamp.minute * SECONDS_PER_MINUTE + stamp.second)
    if count > seconds_left:
        raise RecoveryError(f"too many power values in last line '{line}' of '{path}'")

    loads = fill_missing(raw)
    pv = _aux_powers(
        ctx, "PV", bool(settings.pv_addr), settings.out_pvstat, period, stamp, count
    )
    charge = _aux_powers(
        ctx, "charger", bool(settings.chg_addr), settings.out_chgstat, period, stamp, count
    )
    discharge = _aux_powers(
        ctx,
        "discharge",
        bool(settings.dis_addr or settings.dtu_addr),
        settings.out_disstat,
        period,
        stamp,
        count,
    )

    last_good = ctx.last_good
    last_good.timestamp = int(stamp.timestamp()) + count - 1
    if count == 0:
        ctx.recovered = True
        return True

    meters = _meter_powers(ctx, period, stamp, count)
    for i in range(1, count):
        measured = meters[i]
        if raw[i] is None and measured is not None:
            if measured + pv[i] - charge[i] + discharge[i] <= 0:
                loads[i] = loads[i - 1]

    hour_complete = count == seconds_left
    if not hour_complete:
        for i in range(count):
            meter = _meter_at(meters, i, loads, pv, charge, discharge)
            ctx.hour.add_values(
                load=loads[i],
                pv_power=pv[i],
                charge_power=charge[i],
                discharge_power=discharge[i],
                meter_power=meter,
            )
            if (stamp + timedelta(seconds=i)).second == SECONDS_PER_MINUTE - 1:
                ctx.hour.reset_minute()

    last_good.pv_power = pv[-1]
    last_good.charge_power = charge[-1]
    last_good.discharge_power = discharge[-1]
    last_good.meter_power = _meter_at(meters, count - 1, loads, pv, charge, discharge)
    if loads[-1] > 0:
        last_good.load = loads[-1]

    if hour_complete:
        logger.info("hour starting %s was already complete, starting a new hour", stamp)
        return False
    ctx.recovered = True
    logger.info("recovered %d seconds of the hour starting %s", count, stamp)
    return True
