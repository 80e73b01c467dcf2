"""
Rollup accumulator: the second/minute/hour/day/year state machine.

Every composed sample is folded into the hour accumulator and written to the
per-second streams. Transitions are driven by the sample's own timestamp in
the configured zone, never by the wall clock:

- first sample or ``00:00:00``: day rollover (rotate the day-scoped files),
  cascading into a year rollover on the first sample or on January 1st;
- first sample or ``mm:ss == 00:00``: a new hour line in the per-second and
  per-minute load files (the first sample after a recovery continues the
  recovered line instead);
- ``ss == 59``: the minute's average load is appended and all streams are
  flushed;
- ``mm:ss == 59:59``: the hour's energy row is written, the balance
  identities are checked, and the hour sums are zeroed.

The minute and hour closings are skipped for the very first sample of a run.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from meterlog.src.models import SECONDS_PER_MINUTE, round_half_away

if TYPE_CHECKING:
    from meterlog.src.health import HealthWriter
    from meterlog.src.models import CollectorContext, Sample

logger = logging.getLogger(__name__)


class RollupAccumulator:
    """Folds samples into the hour sums and drives the output rotation.

    Args:
        ctx: Collector context holding the accumulator and the streams.
        health: Optional health writer refreshed at each minute boundary.
    """

    def __init__(self, ctx: CollectorContext, health: HealthWriter | None = None) -> None:
        self._ctx = ctx
        self._health = health

    def process(self, sample: Sample) -> None:
        """Fold one sample and perform any boundary transitions it triggers."""
        ctx = self._ctx
        when = datetime.fromtimestamp(sample.timestamp, tz=ctx.tz)
        first = ctx.counters.seconds == 0

        self._before_hour(when, first)

        ctx.counters.seconds += 1
        ctx.hour.add(sample)
        ctx.streams.write_second(sample, when)

        if first or when.second != 59:
            return
        self._close_minute()
        if when.minute == 59:
            self._close_hour(when)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _before_hour(self, when: datetime, first: bool) -> None:
        if not (first or (when.minute == 0 and when.second == 0)):
            return
        self._before_day(when, first)
        if first and self._ctx.recovered:
            return
        self._ctx.streams.begin_hour(when.strftime(self._ctx.settings.datetime_format))

    def _before_day(self, when: datetime, first: bool) -> None:
        if not (first or (when.hour == 0 and when.minute == 0 and when.second == 0)):
            return
        streams = self._ctx.streams
        if first or (when.month == 1 and when.day == 1):
            streams.open_year(when.year)
            logger.info("opened output for year %d", when.year)
        streams.open_day(when.date())
        logger.debug("opened output for %s", when.date().isoformat())

    def _close_minute(self) -> None:
        ctx = self._ctx
        ctx.streams.write_minute_load(
            round_half_away(ctx.hour.minute_sum / SECONDS_PER_MINUTE)
        )
        ctx.hour.reset_minute()
        ctx.streams.flush()
        if self._health is not None:
            self._health.update(ctx.counters, ctx.last_good.timestamp)

    def _close_hour(self, when: datetime) -> None:
        ctx = self._ctx
        ctx.streams.write_hour(
            when.strftime(ctx.settings.datetime_format),
            ctx.hour.watt_hours(),
            ctx.last_good.battery_voltage,
        )
        ctx.streams.flush()
        for error in ctx.hour.consistency_errors():
            logger.warning(error)
        ctx.hour.reset()
