"""
Load composer: derive the household load from meter and auxiliary powers.

``load = meter + pv - charge + discharge``. The meter sees the household
load net of local production and storage, so PV production and battery
discharge are added back and battery charging is taken out.

Plausibility gate: the composed load is accepted only when it is positive
and PV, charge and discharge power are all non-negative. Otherwise each
negative auxiliary value is replaced by its last-known-good value and the
load by the previous accepted load, each substitution logged separately;
the sample is flagged not plausible so it stays out of the high-resolution
load file while still feeding the energy sums.

Standby noise of the switches (a Plus 1PM reports up to ~0.8 W even at
night) is floored to zero before use.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging

from meterlog.src.models import EventCounters, LastKnownGood, Sample

logger = logging.getLogger(__name__)

PV_STANDBY_W: float = 0.9
"""PV readings at or below this magnitude are treated as zero."""

CHARGE_STANDBY_W: float = 0.5
"""Charger readings at or below this magnitude are treated as zero."""

DISCHARGE_STANDBY_W: float = 0.5
"""Discharge readings at or below this magnitude are treated as zero."""


def floor_standby(power: float, threshold: float) -> float:
    """Return 0 for readings within the standby noise band of a device."""
    return 0.0 if abs(power) <= threshold else power


def compose(
    *,
    timestamp: int,
    meter_power: float,
    pv_power: float = 0.0,
    charge_power: float = 0.0,
    discharge_power: float = 0.0,
    last_good: LastKnownGood,
    counters: EventCounters,
    phases: tuple[float, float, float] | None = None,
    synthetic: bool = False,
    meter_payload: str = "",
    pv_payload: str = "",
    charge_payload: str = "",
    discharge_payload: str = "",
) -> Sample:
    """Compose one sample and update the last-known-good state.

    Args:
        timestamp: Unix seconds of the sample.
        meter_power: Net power at the meter (positive = import).
        pv_power: PV production as reported (or substituted when missing).
        charge_power: Battery charge power.
        discharge_power: Battery discharge power.
        last_good: Last-known-good values; updated from genuine plausible
            values only.
        counters: Event counters; substitutions are counted.
        phases: Per-phase meter powers for the composite output.
        synthetic: True for interpolated seconds, which never update
            *last_good*.

    Returns:
        The composed sample.
    """
    pv_power = floor_standby(pv_power, PV_STANDBY_W)
    charge_power = floor_standby(charge_power, CHARGE_STANDBY_W)
    discharge_power = floor_standby(discharge_power, DISCHARGE_STANDBY_W)

    load = meter_power + pv_power - charge_power + discharge_power
    plausible = load > 0 and pv_power >= 0 and charge_power >= 0 and discharge_power >= 0

    if pv_power < 0:
        pv_power = _substitute("PV power", pv_power, last_good.pv_power, counters)
    if charge_power < 0:
        charge_power = _substitute(
            "charge power", charge_power, last_good.charge_power, counters
        )
    if discharge_power < 0:
        discharge_power = _substitute(
            "discharge power", discharge_power, last_good.discharge_power, counters
        )
    if not plausible:
        load = _substitute("load", load, last_good.load, counters)

    if not synthetic:
        # Individually plausible auxiliary values are remembered even when
        # the composed load is not.
        last_good.pv_power = pv_power
        last_good.charge_power = charge_power
        last_good.discharge_power = discharge_power
        last_good.meter_power = meter_power
        last_good.timestamp = timestamp
        if plausible:
            last_good.load = load

    return Sample(
        timestamp=timestamp,
        load=load,
        meter_power=meter_power,
        pv_power=pv_power,
        charge_power=charge_power,
        discharge_power=discharge_power,
        phases=phases,
        plausible=plausible,
        synthetic=synthetic,
        meter_payload=meter_payload,
        pv_payload=pv_payload,
        charge_payload=charge_payload,
        discharge_payload=discharge_payload,
    )


def _substitute(what: str, value: float, previous: float, counters: EventCounters) -> float:
    counters.substitutions += 1
    logger.warning(
        "%s %.2f is not plausible, taking previous value %.2f", what, value, previous
    )
    return previous
