"""
Collector configuration loaded from environment variables and the command line.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Positional command-line arguments may override the settings in the fixed
order of POSITIONAL_FIELDS; an empty argument keeps the environment value
or default. An empty output name or device address disables that feature.

CHANGELOG:
- 2026-10-19: Add discharge switch and inverter addresses
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

OFFLINE_ADDR = "-"
"""Meter address selecting offline input from files or stdin."""

POSITIONAL_FIELDS: tuple[str, ...] = (
    "out_basename",
    "out_power",
    "out_energy",
    "out_load_min",
    "out_load_sec",
    "out_status",
    "out_pvstat",
    "out_chgstat",
    "out_disstat",
    "out_log",
    "time_zone",
    "meter_addr",
    "pv_addr",
    "chg_addr",
    "dis_addr",
    "dtu_addr",
    "dtu_serial",
    "meter_user",
    "meter_pass",
    "pv_user",
    "pv_pass",
    "chg_user",
    "chg_pass",
    "dis_user",
    "dis_pass",
)
"""Order in which positional command-line arguments map onto settings."""


class CollectorSettings(BaseSettings):
    """Meter collector configuration.

    Attributes:
        out_basename: Prefix of every output file name (e.g. ``~/3EM_``).
        out_power: Name of the per-second composite power file.
        out_energy: Name of the per-hour energy file.
        out_load_min: Name of the per-minute load file.
        out_load_sec: Name of the per-second load file (needed for recovery).
        out_status: Name of the per-second meter status file.
        out_pvstat: Name of the per-second PV status file.
        out_chgstat: Name of the per-second charger status file.
        out_disstat: Name of the per-second discharge status file.
        out_log: Name of the per-year event log.
        time_zone: IANA zone for output; the default is CET without DST.
        meter_addr: Host of the 3EM meter, or ``-`` for offline input.
        pv_addr: Host of the PV switch (Plus 1PM).
        chg_addr: Host of the charger switch.
        dis_addr: Host of the discharge switch.
        dtu_addr: Host of the discharge inverter controller (OpenDTU).
        dtu_serial: Serial number of the inverter to read from the DTU.
        meter_user / meter_pass: HTTP Basic credentials of the meter; used
            for the auxiliary sources when theirs are not set.
        poll_interval_s: Pause between loop iterations in seconds.
        http_timeout_s: Per-request HTTP timeout in seconds.
        health_path: Path of the JSON health file, empty to disable.
    """

    out_basename: str = ""
    out_power: str = ""
    out_energy: str = ""
    out_load_min: str = ""
    out_load_sec: str = ""
    out_status: str = ""
    out_pvstat: str = ""
    out_chgstat: str = ""
    out_disstat: str = ""
    out_log: str = ""
    time_zone: str = "Etc/GMT-1"
    meter_addr: str
    pv_addr: str = ""
    chg_addr: str = ""
    dis_addr: str = ""
    dtu_addr: str = ""
    dtu_serial: str = ""
    meter_user: str = ""
    meter_pass: str = ""
    pv_user: str = ""
    pv_pass: str = ""
    chg_user: str = ""
    chg_pass: str = ""
    dis_user: str = ""
    dis_pass: str = ""
    date_format: str = "%Y-%m-%d"
    time_format: str = "%H:%M:%S"
    date_time_sep: str = " "
    poll_interval_s: float = 0.7
    http_timeout_s: float = 1.0
    health_path: str = ""
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _default_aux_credentials(self) -> "CollectorSettings":
        """Fall back to the meter credentials for auxiliary sources."""
        for prefix in ("pv", "chg", "dis"):
            if not getattr(self, f"{prefix}_user"):
                setattr(self, f"{prefix}_user", self.meter_user)
            if not getattr(self, f"{prefix}_pass"):
                setattr(self, f"{prefix}_pass", self.meter_pass)
        return self

    @model_validator(mode="after")
    def _dtu_needs_serial(self) -> "CollectorSettings":
        if self.dtu_addr and not self.dtu_serial:
            raise ValueError("DTU_SERIAL must be set when DTU_ADDR is set")
        return self

    @field_validator("meter_addr")
    @classmethod
    def meter_addr_must_be_set(cls, v: str) -> str:
        """The primary meter is mandatory."""
        if not v:
            raise ValueError("METER_ADDR must be set (or '-' for offline input)")
        return v

    @field_validator("time_zone")
    @classmethod
    def time_zone_must_be_known(cls, v: str) -> str:
        """Validate that the zone exists in the tz database."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"TIME_ZONE '{v}' is not a known time zone") from exc
        return v

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("POLL_INTERVAL_S must be >= 0")
        return v

    @field_validator("http_timeout_s")
    @classmethod
    def http_timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("HTTP_TIMEOUT_S must be > 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Normalise to an upper-case level name known to logging."""
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"LOG_LEVEL '{v}' is not a known logging level")
        return level

    @property
    def offline(self) -> bool:
        """True when samples are read from files or stdin instead of devices."""
        return self.meter_addr == OFFLINE_ADDR

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def datetime_format(self) -> str:
        """strftime pattern of the date-time stamps in the output files."""
        return f"{self.date_format}{self.date_time_sep}{self.time_format}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse positional overrides; in offline mode the rest are input files."""
    parser = argparse.ArgumentParser(
        prog="meterlog",
        description="Collect per-second energy meter data into CSV files.",
    )
    parser.add_argument(
        "values",
        nargs="*",
        help="positional settings in the order: " + " ".join(POSITIONAL_FIELDS),
    )
    return parser.parse_args(argv)


def load_settings(
    argv: Sequence[str] | None = None,
) -> tuple[CollectorSettings, list[str]]:
    """Build settings from the environment plus positional overrides.

    Returns:
        The validated settings and the offline input files (arguments after
        the meter address when it is ``-``; positional settings that follow
        it are not consumed in that case).
    """
    values = parse_args(argv).values
    overrides: dict[str, str] = {}
    inputs: list[str] = []
    if len(values) > len(POSITIONAL_FIELDS) and OFFLINE_ADDR not in values:
        raise ValueError(
            f"expected at most {len(POSITIONAL_FIELDS)} positional settings, "
            f"got {len(values)}"
        )
    for idx, value in enumerate(values[: len(POSITIONAL_FIELDS)]):
        name = POSITIONAL_FIELDS[idx]
        if value:
            overrides[name] = value
        if name == "meter_addr" and value == OFFLINE_ADDR:
            inputs = list(values[idx + 1 :])
            break
    settings = CollectorSettings(**overrides)
    return settings, inputs
