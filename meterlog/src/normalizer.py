"""
Pure parsers that turn decoded device JSON into typed Readings.

One pydantic model per device family describes the exact response shape the
collector relies on:

- Shelly 3EM ``/status`` (three-phase primary meter),
- Shelly Plus 1PM ``rpc/Shelly.GetStatus`` (single-channel power switch used
  for PV, charger and discharge measurement),
- OpenDTU ``api/livedata/status`` (inverter controller for the discharge
  path, selected by inverter serial).

The models are validated in strict mode: a missing field, a value of the
wrong type, a meter phase flagged invalid or a wrong number of phases raises
``pydantic.ValidationError`` or :class:`ShapeMismatch`, which the fetcher
classifies as a parse mismatch. Fields the collector does not use are
ignored.

These are pure functions: no I/O, no clock.

CHANGELOG:
- 2026-10-19: Add OpenDTU inverter shape for the discharge path
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meterlog.src.models import Reading, SourceKind

logger = logging.getLogger(__name__)

METER_TOTAL_POWER_TOLERANCE_W = 0.1
"""Allowed deviation between the sum of phase powers and ``total_power``."""


class ShapeMismatch(ValueError):
    """Raised when valid JSON does not describe the expected device state."""


# ---------------------------------------------------------------------------
# Shelly 3EM
# ---------------------------------------------------------------------------


class _Strict(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)


class EmeterChannel(_Strict):
    """One phase of the 3EM ``emeters`` array."""

    power: float
    pf: float
    current: float
    voltage: float
    is_valid: bool
    total: float
    total_returned: float

    @field_validator("is_valid")
    @classmethod
    def phase_must_be_valid(cls, v: bool) -> bool:
        if not v:
            raise ValueError("phase measurement flagged invalid")
        return v


class MeterStatus(_Strict):
    """Shelly 3EM ``/status`` response."""

    time: str
    unixtime: int
    emeters: list[EmeterChannel] = Field(min_length=3, max_length=3)
    total_power: float
    uptime: int


def _fmt_phase(ch: EmeterChannel) -> str:
    return (
        f"{ch.power:6.2f},{ch.pf},{ch.current},{ch.voltage},"
        f"{ch.total},{ch.total_returned}"
    )


def parse_meter(data: Any) -> Reading:
    """Parse a decoded 3EM ``/status`` document.

    The meter power is the sum of the three phase powers; ``total_power`` is
    only cross-checked. A ``unixtime`` of 0 (clock not yet synchronised) is
    reported as a missing timestamp.

    Raises:
        pydantic.ValidationError: If the document does not match the shape.
    """
    status = MeterStatus.model_validate(data)
    phases = tuple(ch.power for ch in status.emeters)
    power = sum(phases)
    if abs(power - status.total_power) > METER_TOTAL_POWER_TOLERANCE_W:
        logger.warning(
            "inconsistent 3EM total_power = %s vs. %s + %s + %s",
            status.total_power,
            *phases,
        )
    return Reading(
        kind=SourceKind.METER,
        timestamp=status.unixtime or None,
        power=power,
        payload=",".join(_fmt_phase(ch) for ch in status.emeters),
        phases=phases,
        uptime=status.uptime,
        clock=status.time,
    )


# ---------------------------------------------------------------------------
# Shelly Plus 1PM
# ---------------------------------------------------------------------------


class SwitchEnergy(_Strict):
    total: float
    by_minute: list[float]
    minute_ts: int | None = None


class SwitchTemperature(_Strict):
    t_c: float = Field(alias="tC")


class SwitchChannel(_Strict):
    id: int
    output: bool
    apower: float
    voltage: float
    current: float
    aenergy: SwitchEnergy
    temperature: SwitchTemperature


class SwitchStatus(_Strict):
    """Plus 1PM ``rpc/Shelly.GetStatus`` response (only ``switch:0`` is used)."""

    switch: SwitchChannel = Field(alias="switch:0")


def parse_switch(data: Any, kind: SourceKind) -> Reading:
    """Parse a decoded Plus 1PM status document for source *kind*.

    The timestamp is the switch's ``minute_ts`` (start of the current minute);
    a missing or zero value is reported as ``None`` so the caller substitutes
    the meter timestamp.

    Raises:
        pydantic.ValidationError: If the document does not match the shape.
    """
    ch = SwitchStatus.model_validate(data).switch
    return Reading(
        kind=kind,
        timestamp=ch.aenergy.minute_ts or None,
        power=ch.apower,
        payload=f"{ch.voltage},{ch.current},{ch.aenergy.total},{ch.temperature.t_c}",
    )


# ---------------------------------------------------------------------------
# OpenDTU
# ---------------------------------------------------------------------------


class DtuValue(_Strict):
    v: float
    u: str = ""


class DtuAcChannel(_Strict):
    power: DtuValue = Field(alias="Power")
    voltage: DtuValue = Field(alias="Voltage")
    current: DtuValue = Field(alias="Current")
    frequency: DtuValue = Field(alias="Frequency")
    power_factor: DtuValue = Field(alias="PowerFactor")


class DtuDcChannel(_Strict):
    power: DtuValue = Field(alias="Power")
    voltage: DtuValue = Field(alias="Voltage")
    current: DtuValue = Field(alias="Current")


class DtuInvChannel(_Strict):
    temperature: DtuValue = Field(alias="Temperature")


class DtuInverter(_Strict):
    serial: str
    reachable: bool
    data_age: int
    limit_relative: float
    limit_absolute: float
    ac: dict[str, DtuAcChannel] = Field(alias="AC", min_length=1)
    dc: dict[str, DtuDcChannel] = Field(alias="DC", min_length=1)
    inv: dict[str, DtuInvChannel] = Field(alias="INV", min_length=1)


class DtuStatus(_Strict):
    """OpenDTU ``api/livedata/status`` response."""

    inverters: list[DtuInverter]


def parse_inverter(data: Any, serial: str) -> Reading:
    """Parse a decoded OpenDTU live-data document for inverter *serial*.

    The discharge power is the AC output power; the first DC channel's voltage
    is reported as battery voltage. OpenDTU does not report a device
    timestamp, only ``data_age`` (seconds since the last inverter update).

    Raises:
        pydantic.ValidationError: If the document does not match the shape.
        ShapeMismatch: If the serial is absent or the inverter unreachable.
    """
    status = DtuStatus.model_validate(data)
    inverter = next((inv for inv in status.inverters if inv.serial == serial), None)
    if inverter is None:
        raise ShapeMismatch(f"inverter serial {serial} not in response")
    if not inverter.reachable:
        raise ShapeMismatch(f"inverter {serial} not reachable")

    ac = inverter.ac[min(inverter.ac)]
    dc = inverter.dc[min(inverter.dc)]
    temperature = inverter.inv[min(inverter.inv)].temperature.v
    dc_power = sum(ch.power.v for ch in inverter.dc.values())
    payload = (
        f"{ac.voltage.v},{ac.current.v},{ac.frequency.v},{ac.power_factor.v},"
        f"{dc_power},{dc.voltage.v},{dc.current.v},"
        f"{inverter.limit_absolute},{inverter.limit_relative},{temperature}"
    )
    return Reading(
        kind=SourceKind.DISCHARGE_INVERTER,
        timestamp=None,
        power=ac.power.v,
        payload=payload,
        dc_voltage=dc.voltage.v,
        data_age=inverter.data_age,
    )
