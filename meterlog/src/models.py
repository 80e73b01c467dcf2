"""
Data model for the meter collector.

Defines the typed readings produced by the fetcher, the classified fetch
failures, the per-second sample handed from the synchronizer to the rollup
accumulator, and the mutable state shared by one collector run
(last-known-good values, event counters, hour accumulator) bundled in a
single CollectorContext.

CHANGELOG:
- 2026-10-19: Add discharge sources and battery voltage
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from meterlog.src.config import CollectorSettings
    from meterlog.src.writer import OutputStreams

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE

BALANCE_TOLERANCE_WH = 1
"""Allowed rounding difference between the balance and its cross-checks."""


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(value + (-0.5 if value < 0 else 0.5))


# ---------------------------------------------------------------------------
# Readings and failures
# ---------------------------------------------------------------------------


class SourceKind(str, Enum):
    """Kind of device a reading originates from."""

    METER = "meter"
    PV = "pv"
    CHARGER = "charger"
    DISCHARGE_SWITCH = "discharge_switch"
    DISCHARGE_INVERTER = "discharge_inverter"


class FailureKind(str, Enum):
    """Classification of a failed fetch."""

    TRANSIENT_NETWORK = "transient-network"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed-response"
    PARSE_MISMATCH = "parse-mismatch"


class Reading(BaseModel):
    """One parsed device response.

    Attributes:
        kind: Source the reading was fetched from.
        timestamp: Unix seconds reported by the device, or ``None`` when the
            device did not report one.
        power: Instantaneous power in watts (signed).
        payload: Auxiliary fields (voltage, current, energy totals,
            temperature) as a comma-separated string, passed through to the
            status files unchanged.
        phases: Per-phase powers in watts, meter readings only.
        dc_voltage: Battery-side DC voltage, inverter readings only.
        uptime: Device uptime in seconds, meter readings only.
        clock: Device wall-clock ``HH:MM``, meter readings only.
        data_age: Seconds since the inverter last heard from the device,
            inverter readings only.
    """

    kind: SourceKind
    timestamp: int | None
    power: float
    payload: str = ""
    phases: tuple[float, float, float] | None = None
    dc_voltage: float | None = None
    uptime: int | None = None
    clock: str | None = None
    data_age: int | None = None


class FetchFailure(BaseModel):
    """A classified failure to obtain a reading from one source."""

    kind: FailureKind
    source: SourceKind
    detail: str = ""


# ---------------------------------------------------------------------------
# Per-second sample
# ---------------------------------------------------------------------------


class Sample(BaseModel):
    """One composed second of household power data.

    Attributes:
        timestamp: Unix seconds, taken from the primary meter.
        load: Derived household load in watts.
        meter_power: Net power at the meter (positive = import).
        pv_power: PV production used for composition.
        charge_power: Battery charge power used for composition.
        discharge_power: Battery discharge power used for composition.
        phases: Per-phase meter powers, when measured.
        plausible: False when any value had to be substituted.
        synthetic: True for seconds filled in by gap interpolation.
    """

    timestamp: int
    load: float
    meter_power: float
    pv_power: float = 0.0
    charge_power: float = 0.0
    discharge_power: float = 0.0
    phases: tuple[float, float, float] | None = None
    plausible: bool = True
    synthetic: bool = False
    meter_payload: str = ""
    pv_payload: str = ""
    charge_payload: str = ""
    discharge_payload: str = ""

    @property
    def clean(self) -> bool:
        """Whether the load may go to the high-resolution load file."""
        return self.plausible and not self.synthetic


# ---------------------------------------------------------------------------
# Mutable run state
# ---------------------------------------------------------------------------


@dataclass
class LastKnownGood:
    """Most recent plausible, genuinely measured values.

    Read whenever a source fails to answer or reports an implausible value.
    Never updated from a substituted or interpolated value.
    """

    pv_power: float = 0.0
    charge_power: float = 0.0
    discharge_power: float = 0.0
    load: float = 0.0
    meter_power: float = 0.0
    timestamp: int = 0
    battery_voltage: float | None = None


@dataclass
class EventCounters:
    """Counters reported in the final summary and the health file."""

    seconds: int = 0
    gaps: int = 0
    duplicates: int = 0
    backward_steps: int = 0
    substitutions: int = 0
    misses: dict[str, int] = field(
        default_factory=lambda: {
            SourceKind.PV.value: 0,
            SourceKind.CHARGER.value: 0,
            SourceKind.DISCHARGE_SWITCH.value: 0,
            SourceKind.DISCHARGE_INVERTER.value: 0,
        }
    )

    def record_miss(self, kind: SourceKind) -> int:
        """Increment and return the miss count of *kind*."""
        self.misses[kind.value] = self.misses.get(kind.value, 0) + 1
        return self.misses[kind.value]


@dataclass
class HourAccumulator:
    """Energy sums of the current hour in watt-seconds.

    ``minute_sum`` is the running load sum of the current minute.
    """

    consumed: float = 0.0
    produced: float = 0.0
    charged: float = 0.0
    discharged: float = 0.0
    own_used: float = 0.0
    balance: float = 0.0
    imported: float = 0.0
    exported: float = 0.0
    minute_sum: float = 0.0

    def add(self, sample: Sample) -> None:
        """Fold one sample into the running sums."""
        self.add_values(
            load=sample.load,
            pv_power=sample.pv_power,
            charge_power=sample.charge_power,
            discharge_power=sample.discharge_power,
            meter_power=sample.meter_power,
        )

    def add_values(
        self,
        *,
        load: float,
        pv_power: float,
        charge_power: float,
        discharge_power: float,
        meter_power: float,
    ) -> None:
        """Fold one second of raw values into the running sums."""
        self.minute_sum += load
        self.consumed += load
        self.produced += pv_power
        self.charged += charge_power
        self.discharged += discharge_power
        self.own_used += min(load, pv_power)
        self.balance += meter_power
        # Bidirectional meter registers 1.8.0 (import) and 2.8.0 (export).
        if meter_power > 0:
            self.imported += meter_power
        elif meter_power < 0:
            self.exported -= meter_power

    def watt_hours(self) -> dict[str, int]:
        """Return the eight energy categories rounded to watt-hours."""
        return {
            "consumed": round_half_away(self.consumed / SECONDS_PER_HOUR),
            "produced": round_half_away(self.produced / SECONDS_PER_HOUR),
            "charged": round_half_away(self.charged / SECONDS_PER_HOUR),
            "discharged": round_half_away(self.discharged / SECONDS_PER_HOUR),
            "own_used": round_half_away(self.own_used / SECONDS_PER_HOUR),
            "balance": round_half_away(self.balance / SECONDS_PER_HOUR),
            "imported": round_half_away(self.imported / SECONDS_PER_HOUR),
            "exported": round_half_away(self.exported / SECONDS_PER_HOUR),
        }

    def consistency_errors(self) -> list[str]:
        """Check the two balance identities, returning any violations."""
        balance = round_half_away(self.balance / SECONDS_PER_HOUR)
        flows = round_half_away(
            (self.consumed + self.charged - self.discharged - self.produced)
            / SECONDS_PER_HOUR
        )
        net = round_half_away((self.imported - self.exported) / SECONDS_PER_HOUR)
        errors = []
        if abs(balance - flows) > BALANCE_TOLERANCE_WH:
            errors.append(
                f"energy balance = {balance} vs. {flows} = "
                "energy consumed + charged - discharged - produced"
            )
        if abs(balance - net) > BALANCE_TOLERANCE_WH:
            errors.append(
                f"energy balance = {balance} vs. {net} = energy imported - exported"
            )
        return errors

    def reset_minute(self) -> None:
        self.minute_sum = 0.0

    def reset(self) -> None:
        """Zero all hour sums, including the running minute."""
        self.consumed = self.produced = self.charged = self.discharged = 0.0
        self.own_used = self.balance = self.imported = self.exported = 0.0
        self.minute_sum = 0.0


@dataclass
class CollectorContext:
    """All state owned by one collector run.

    Passed explicitly to each component instead of living in module
    globals.

    Attributes:
        settings: Validated configuration.
        tz: Time zone used for bucketing and output.
        streams: Open output files.
        last_good: Last-known-good values for substitution.
        counters: Event counters for the summary and health file.
        hour: Running energy sums of the current hour.
        recovered: True when the recovery loader rebuilt the current hour;
            the first live sample then continues the recovered line.
    """

    settings: CollectorSettings
    tz: ZoneInfo
    streams: OutputStreams
    last_good: LastKnownGood = field(default_factory=LastKnownGood)
    counters: EventCounters = field(default_factory=EventCounters)
    hour: HourAccumulator = field(default_factory=HourAccumulator)
    recovered: bool = False
