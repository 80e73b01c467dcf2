"""
Output stream set: the CSV files and the event log of the collector.

Owns every open output file and rotates them at day and year boundaries:

- day-scoped (``<basename><name>_<date>.csv``): per-second load (one line
  per hour, no header), meter status, PV status, charger status, discharge
  status and composite power;
- year-scoped (``<basename><name>_<year>.csv``): per-minute load (one line
  per hour, no header) and per-hour energy, plus the event log
  ``<basename><name>_<year>.txt``.

A category whose name is empty is routed to ``os.devnull`` so that every
write call site stays unconditional. Files are opened for appending and get
their header only when empty. Open or write failures raise ``OSError``.

The event log is a ``logging.FileHandler`` on the ``meterlog`` logger, so
every warning and fatal error of the package also lands in the current
year's log file.

CHANGELOG:
- 2026-10-19: Add discharge status file
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from meterlog.src.config import CollectorSettings
    from meterlog.src.models import Sample

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "meterlog"
"""Logger the year log handler is attached to."""


class EventLogFormatter(logging.Formatter):
    """Human-readable event log lines, ``<time>: [LEVEL: ]<message>``.

    Times are rendered in the collector's time zone; INFO lines carry no
    level prefix.
    """

    def __init__(self, tz: ZoneInfo, datetime_format: str) -> None:
        super().__init__()
        self._tz = tz
        self._datetime_format = datetime_format

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=self._tz)
        prefix = "" if record.levelno == logging.INFO else f"{record.levelname}: "
        line = f"{when.strftime(self._datetime_format)}: {prefix}{record.getMessage()}"
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _open_append(path: Path | None, header: str | None = None) -> TextIO:
    """Open *path* for appending, writing *header* if the file is empty."""
    if path is None:
        return open(os.devnull, "a", encoding="utf-8")  # noqa: SIM115
    fh = path.open("a", encoding="utf-8")
    if header is not None and path.stat().st_size == 0:
        fh.write(header + "\n")
    return fh


def _ends_with_open_line(path: Path | None) -> bool:
    if path is None or not path.exists() or path.stat().st_size == 0:
        return False
    with path.open("rb") as fh:
        fh.seek(-1, os.SEEK_END)
        return fh.read(1) != b"\n"


class LineFile:
    """A file holding one line per hour that grows by one field at a time.

    A line left open by a previous run (crash or restart) is detected on
    open, so a new line is only started after terminating it.
    """

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self._open_line = _ends_with_open_line(path)
        self._fh = _open_append(path)

    def begin_line(self, stamp: str) -> None:
        if self._open_line:
            self._fh.write("\n")
        self._fh.write(stamp)
        self._open_line = True

    def append(self, value: str) -> None:
        self._fh.write("," + value)
        self._open_line = True

    def terminate(self) -> None:
        if self._open_line:
            self._fh.write("\n")
            self._open_line = False

    def flush(self) -> None:
        self._fh.flush()

    def close(self) -> None:
        self._fh.close()


def _fmt_aux(power: float) -> str:
    return f"{power:5.1f}" if power else "    0"


def _fmt_payload(payload: str) -> str:
    return "," + payload if payload else ""


class OutputStreams:
    """The set of open output files of one collector run.

    Args:
        settings: Output names, base name and date/time formats.
        tz: Zone used in the headers.
    """

    def __init__(self, settings: CollectorSettings, tz: ZoneInfo) -> None:
        self._settings = settings
        self._tz = tz
        self._day: dict[str, TextIO] = {}
        self._year: dict[str, TextIO] = {}
        self._load_sec: LineFile | None = None
        self._load_min: LineFile | None = None
        self._log_handler: logging.FileHandler | None = None

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def path_for(self, name: str, period: str, ext: str = ".csv") -> Path | None:
        """Return ``<basename><name>_<period><ext>``, or ``None`` if disabled."""
        if not name:
            return None
        return Path(os.path.expanduser(f"{self._settings.out_basename}{name}_{period}{ext}"))

    def day_period(self, day: date) -> str:
        return day.strftime(self._settings.date_format)

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        tz = self._settings.time_zone
        phase_cols = ",".join(
            f"power{p} [W],pf{p},current{p} [A],voltage{p} [V],"
            f"total{p} [Wh],total_returned{p} [Wh]"
            for p in "ABC"
        )
        switch_cols = "voltage [V],current [A],total [Wh],temperature [°C]"
        if self._settings.dtu_addr:
            discharge_cols = (
                "AC voltage [V],AC current [A],frequency [Hz],power factor,"
                "DC power [W],DC voltage [V],DC current [A],limit [W],limit [%],"
                "temperature [°C]"
            )
        else:
            discharge_cols = switch_cols
        return {
            "status": f"time [{tz}],PV power [W],charger power [W],"
            f"discharge power [W],total_power [W],{phase_cols}",
            "pvstat": f"time [{tz}],PV power [W],{switch_cols}",
            "chgstat": f"time [{tz}],charger power [W],{switch_cols}",
            "disstat": f"time [{tz}],discharge power [W],{discharge_cols}",
            "power": f"time [{tz}],load [W],PV power [W],charge power [W],"
            "discharge power [W],powerA [W],powerB [W],powerC [W]",
            "energy": f"time [{tz}],consumed [Wh],produced [Wh],charged [Wh],"
            "discharged [Wh],own use [Wh],balance [Wh],imported [Wh],"
            "exported [Wh],battery voltage [V]",
        }

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def open_day(self, day: date) -> None:
        """Close the previous day's streams and open those of *day*."""
        self.close_day(terminate=True)
        s = self._settings
        period = self.day_period(day)
        headers = self._headers()
        self._load_sec = LineFile(self.path_for(s.out_load_sec, period))
        for key, name in (
            ("status", s.out_status),
            ("pvstat", s.out_pvstat),
            ("chgstat", s.out_chgstat),
            ("disstat", s.out_disstat),
            ("power", s.out_power),
        ):
            self._day[key] = _open_append(self.path_for(name, period), headers[key])

    def open_year(self, year: int) -> None:
        """Close the previous year's streams and open those of *year*."""
        self.close_year(terminate=True)
        s = self._settings
        self.open_log(year)
        self._load_min = LineFile(self.path_for(s.out_load_min, str(year)))
        self._year["energy"] = _open_append(
            self.path_for(s.out_energy, str(year)), self._headers()["energy"]
        )

    def open_log(self, year: int) -> None:
        """Attach the event log of *year* to the package logger."""
        self._close_log()
        path = self.path_for(self._settings.out_log, str(year), ".txt")
        if path is None:
            return
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        handler.setFormatter(EventLogFormatter(self._tz, self._settings.datetime_format))
        logging.getLogger(PACKAGE_LOGGER).addHandler(handler)
        self._log_handler = handler

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def begin_hour(self, stamp: str) -> None:
        """Start the hour's line in the per-second and per-minute load files."""
        assert self._load_sec is not None and self._load_min is not None
        self._load_sec.begin_line(stamp)
        self._load_min.begin_line(stamp)

    def write_second(self, sample: Sample, when: datetime) -> None:
        """Write one second to every day-scoped stream.

        The per-second load file gets an empty field for samples that are
        not clean (substituted or interpolated).
        """
        assert self._load_sec is not None
        s = self._settings
        clock = when.strftime(s.time_format)
        stamp = when.strftime(s.datetime_format)
        pv = _fmt_aux(sample.pv_power)
        chg = _fmt_aux(sample.charge_power)
        dis = _fmt_aux(sample.discharge_power)

        self._load_sec.append(str(round(sample.load)) if sample.clean else "")
        self._day["status"].write(
            f"{clock},{pv},{chg},{dis},{sample.meter_power:+6.2f}"
            f"{_fmt_payload(sample.meter_payload)}\n"
        )
        self._day["pvstat"].write(f"{clock},{pv}{_fmt_payload(sample.pv_payload)}\n")
        self._day["chgstat"].write(
            f"{clock},{chg}{_fmt_payload(sample.charge_payload)}\n"
        )
        self._day["disstat"].write(
            f"{clock},{dis}{_fmt_payload(sample.discharge_payload)}\n"
        )
        phases = "".join(f",{p:6.2f}" for p in sample.phases) if sample.phases else ""
        self._day["power"].write(f"{stamp},{sample.load:7.2f},{pv},{chg},{dis}{phases}\n")

    def write_minute_load(self, average: int) -> None:
        assert self._load_min is not None
        self._load_min.append(str(average))

    def write_hour(
        self, stamp: str, watt_hours: dict[str, int], battery_voltage: float | None
    ) -> None:
        """Append one per-hour energy row."""
        cols = ",".join(
            f"{watt_hours[key]:4d}"
            for key in (
                "consumed",
                "produced",
                "charged",
                "discharged",
                "own_used",
                "balance",
                "imported",
                "exported",
            )
        )
        voltage = f"{battery_voltage:.2f}" if battery_voltage is not None else ""
        self._year["energy"].write(f"{stamp},{cols},{voltage}\n")

    def flush(self) -> None:
        """Make all output visible to readers."""
        for fh in (*self._day.values(), *self._year.values()):
            fh.flush()
        for line_file in (self._load_sec, self._load_min):
            if line_file is not None:
                line_file.flush()

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def close_day(self, *, terminate: bool = False) -> None:
        """Close the day-scoped streams.

        Args:
            terminate: End the open per-second load line (at day rollover);
                on shutdown the line stays open for recovery.
        """
        if self._load_sec is not None:
            if terminate:
                self._load_sec.terminate()
            self._load_sec.close()
            self._load_sec = None
        for fh in self._day.values():
            fh.close()
        self._day.clear()

    def close_year(self, *, terminate: bool = False) -> None:
        """Close the year-scoped streams including the event log."""
        if self._load_min is not None:
            if terminate:
                self._load_min.terminate()
            self._load_min.close()
            self._load_min = None
        for fh in self._year.values():
            fh.close()
        self._year.clear()
        self._close_log()

    def _close_log(self) -> None:
        if self._log_handler is not None:
            logging.getLogger(PACKAGE_LOGGER).removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None
