"""
Sample synchronizer: align auxiliary readings to the meter clock.

The primary meter's timestamp is the clock of record. For each meter reading
the synchronizer

1. compares it with the previous timestamp: an unchanged timestamp is a
   duplicate poll and a backward step a clock anomaly; both are discarded
   without touching any state;
2. queries every configured auxiliary source once, substituting the
   last-known-good power for a source that does not answer;
3. when the meter clock jumped by more than one second, synthesises the
   missing seconds by linear interpolation of meter, PV, charge and
   discharge power between the previous and the current values;
4. hands each second to the composer.

CHANGELOG:
- 2026-10-19: Prefer switch power over inverter power for the discharge path
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from meterlog.src.composer import compose
from meterlog.src.models import CollectorContext, Reading, Sample, SourceKind

if TYPE_CHECKING:
    from meterlog.src.fetcher import Source

logger = logging.getLogger(__name__)

TIMESTAMP_TOLERANCE_S: int = 3
"""Accepted skew between an auxiliary timestamp and the meter's."""

MINUTE_TS_SPAN_S: int = 60
"""A switch ``minute_ts`` marks the start of its minute, so it may lag by up to this."""


class Feed(Protocol):
    """Where readings come from: the live fetcher or the offline replay."""

    async def fetch_primary(self) -> Reading | None: ...

    async def fetch_auxiliary(self, source: Source) -> Reading | None: ...


@dataclass
class AuxValues:
    """Auxiliary powers and payloads used for one genuine second."""

    pv_power: float
    charge_power: float
    discharge_power: float
    pv_payload: str = ""
    charge_payload: str = ""
    discharge_payload: str = ""


class SampleSynchronizer:
    """Turns meter readings plus auxiliary readings into per-second samples.

    Args:
        ctx: Collector context (last-known-good state and counters).
        feed: Reading source.
        sources: Configured auxiliary sources, polled in order.
    """

    def __init__(
        self, ctx: CollectorContext, feed: Feed, sources: Sequence[Source]
    ) -> None:
        self._ctx = ctx
        self._feed = feed
        self._sources = list(sources)

    async def next_samples(self) -> list[Sample] | None:
        """Fetch the next meter reading and synchronise it.

        Returns:
            The samples to fold in this tick (interpolated seconds first,
            possibly none), or ``None`` when the feed is exhausted or shut down.
        """
        reading = await self._feed.fetch_primary()
        if reading is None:
            return None
        return await self.synchronize(reading)

    async def synchronize(self, reading: Reading) -> list[Sample]:
        """Synchronise one meter reading that carries a timestamp."""
        assert reading.timestamp is not None
        last_good = self._ctx.last_good
        counters = self._ctx.counters
        timestamp = reading.timestamp
        diff = timestamp - last_good.timestamp if last_good.timestamp else 1

        if diff == 0:
            counters.duplicates += 1
            logger.debug("%d: skipping result for same time", timestamp)
            return []
        if diff < 0:
            counters.backward_steps += 1
            logger.warning(
                "skipping status entry due to negative 3EM unixtime difference: %d",
                diff,
            )
            return []

        aux = await self._poll_auxiliary(timestamp)

        samples: list[Sample] = []
        if diff > 1:
            counters.gaps += 1
            logger.warning("time gap %d: %d seconds", counters.gaps, diff)
            samples.extend(self._interpolate(timestamp, diff, reading.power, aux))

        samples.append(
            compose(
                timestamp=timestamp,
                meter_power=reading.power,
                pv_power=aux.pv_power,
                charge_power=aux.charge_power,
                discharge_power=aux.discharge_power,
                last_good=last_good,
                counters=counters,
                phases=reading.phases,
                meter_payload=reading.payload,
                pv_payload=aux.pv_payload,
                charge_payload=aux.charge_payload,
                discharge_payload=aux.discharge_payload,
            )
        )
        return samples

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _interpolate(
        self, timestamp: int, diff: int, meter_power: float, aux: AuxValues
    ) -> list[Sample]:
        last_good = self._ctx.last_good
        start = last_good.timestamp
        meter_step = (meter_power - last_good.meter_power) / diff
        pv_step = (aux.pv_power - last_good.pv_power) / diff
        charge_step = (aux.charge_power - last_good.charge_power) / diff
        discharge_step = (aux.discharge_power - last_good.discharge_power) / diff
        return [
            compose(
                timestamp=start + i,
                meter_power=last_good.meter_power + meter_step * i,
                pv_power=last_good.pv_power + pv_step * i,
                charge_power=last_good.charge_power + charge_step * i,
                discharge_power=last_good.discharge_power + discharge_step * i,
                last_good=last_good,
                counters=self._ctx.counters,
                synthetic=True,
            )
            for i in range(1, diff)
        ]

    async def _poll_auxiliary(self, timestamp: int) -> AuxValues:
        last_good = self._ctx.last_good
        readings: dict[SourceKind, Reading] = {}
        for source in self._sources:
            reading = await self._feed.fetch_auxiliary(source)
            if reading is None:
                misses = self._ctx.counters.record_miss(source.kind)
                logger.debug("%s miss %d at %d", source.label, misses, timestamp)
                continue
            self._check_timestamp(source, reading, timestamp)
            readings[source.kind] = reading

        aux = AuxValues(
            pv_power=last_good.pv_power,
            charge_power=last_good.charge_power,
            discharge_power=last_good.discharge_power,
        )
        configured = {source.kind for source in self._sources}

        pv = readings.get(SourceKind.PV)
        if pv is not None:
            aux.pv_power, aux.pv_payload = pv.power, pv.payload
        elif SourceKind.PV in configured:
            logger.warning(
                "taking previous PV power value %.1f as no current PV status data available",
                last_good.pv_power,
            )

        charger = readings.get(SourceKind.CHARGER)
        if charger is not None:
            aux.charge_power, aux.charge_payload = charger.power, charger.payload
        elif SourceKind.CHARGER in configured:
            logger.warning(
                "taking previous charge power value %.1f as no current charger status "
                "data available",
                last_good.charge_power,
            )

        switch = readings.get(SourceKind.DISCHARGE_SWITCH)
        inverter = readings.get(SourceKind.DISCHARGE_INVERTER)
        # Power from the switch, status data from the inverter when both answer.
        if switch is not None:
            aux.discharge_power = switch.power
            aux.discharge_payload = switch.payload
        elif inverter is not None:
            aux.discharge_power = inverter.power
        elif configured & {SourceKind.DISCHARGE_SWITCH, SourceKind.DISCHARGE_INVERTER}:
            logger.warning(
                "taking previous discharge power value %.1f as no current discharge "
                "status data available",
                last_good.discharge_power,
            )
        if inverter is not None:
            aux.discharge_payload = inverter.payload
            if inverter.dc_voltage is not None:
                last_good.battery_voltage = inverter.dc_voltage
        return aux

    def _check_timestamp(self, source: Source, reading: Reading, timestamp: int) -> None:
        """Warn about auxiliary data that is not from (about) the meter's second."""
        if reading.data_age is not None and reading.data_age > TIMESTAMP_TOLERANCE_S:
            logger.warning(
                "%s data is %d seconds old at 3EM timestamp %d",
                source.label,
                reading.data_age,
                timestamp,
            )
        if reading.timestamp is None:
            # No native timestamp: the reading belongs to the meter's second.
            return
        earliest = timestamp - MINUTE_TS_SPAN_S - TIMESTAMP_TOLERANCE_S
        if not earliest <= reading.timestamp <= timestamp + TIMESTAMP_TOLERANCE_S:
            logger.warning(
                "%s status timestamp %d does not closely match 3EM timestamp %d",
                source.label,
                reading.timestamp,
                timestamp,
            )
