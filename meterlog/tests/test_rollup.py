"""
Unit tests for the rollup accumulator and the output it drives.

Tests verify:
- A full hour yields 60 per-minute averages, one per-second load line and
  one energy row whose categories satisfy the balance identities.
- Substituted and interpolated seconds leave an empty per-second field but
  are counted in the energy sums.
- Day rollover at 00:00:00 rotates the day-scoped files and terminates the
  open per-second line; year rollover on January 1st rotates the year files.
- Headers are written only into empty files.
- The balance check warns when the identities do not hold.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from meterlog.src.composer import compose
from meterlog.src.config import CollectorSettings
from meterlog.src.health import HealthWriter
from meterlog.src.models import (
    CollectorContext,
    EventCounters,
    LastKnownGood,
    Reading,
    Sample,
    SourceKind,
)
from meterlog.src.rollup import RollupAccumulator
from meterlog.src.synchronizer import SampleSynchronizer


def _ts(*args: int) -> int:
    return int(datetime(*args, tzinfo=UTC).timestamp())


def _sample(
    timestamp: int,
    load: float = 360.0,
    *,
    pv: float = 0.0,
    charge: float = 0.0,
    discharge: float = 0.0,
    **fields: object,
) -> Sample:
    return Sample(
        timestamp=timestamp,
        load=load,
        meter_power=load - pv + charge - discharge,
        pv_power=pv,
        charge_power=charge,
        discharge_power=discharge,
        **fields,
    )


def _lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


def _run(ctx: CollectorContext, samples: list[Sample]) -> None:
    rollup = RollupAccumulator(ctx)
    for sample in samples:
        rollup.process(sample)


class _MeterFeed:
    """Meter readings only; no auxiliary source ever answers."""

    def __init__(self, items: list[tuple[int, float]]) -> None:
        self._items = list(items)

    async def fetch_primary(self) -> Reading | None:
        if not self._items:
            return None
        timestamp, power = self._items.pop(0)
        return Reading(kind=SourceKind.METER, timestamp=timestamp, power=power)

    async def fetch_auxiliary(self, source: object) -> Reading | None:
        return None


# ---------------------------------------------------------------------------
# Full hour
# ---------------------------------------------------------------------------


class TestFullHour:
    """One complete hour of samples."""

    def test_hour_outputs(self, ctx: CollectorContext, tmp_path: Path) -> None:
        start = _ts(2026, 10, 19, 10, 0, 0)
        samples = [
            _sample(start + i, 360.0, pv=120.0, charge=60.0, discharge=30.0)
            for i in range(3600)
        ]

        _run(ctx, samples)
        ctx.streams.close_day()
        ctx.streams.close_year()

        (load_sec,) = _lines(tmp_path / "3EM_load_sec_2026-10-19.csv")
        fields = load_sec.split(",")
        assert fields[0] == "2026-10-19 10:00:00"
        assert fields[1:] == ["360"] * 3600

        (load_min,) = _lines(tmp_path / "3EM_load_min_2026.csv")
        assert load_min.split(",")[1:] == ["360"] * 60

        energy = _lines(tmp_path / "3EM_energy_2026.csv")
        assert energy[0].startswith("time [UTC],consumed [Wh],produced [Wh]")
        assert energy[1] == (
            "2026-10-19 10:59:59, 360, 120,  60,  30, 120, 270, 270,   0,"
        )

        status = _lines(tmp_path / "3EM_status_2026-10-19.csv")
        assert len(status) == 3601
        assert status[1].startswith("10:00:00,120.0, 60.0, 30.0,+270.00")

        power = _lines(tmp_path / "3EM_power_2026-10-19.csv")
        assert power[1] == "2026-10-19 10:00:00, 360.00,120.0, 60.0, 30.0"

        assert ctx.counters.seconds == 3600
        assert ctx.hour.consumed == 0.0

    @pytest.mark.asyncio
    async def test_example_gap_scenario(self, ctx: CollectorContext, tmp_path: Path) -> None:
        """T, T+1, T+3 at 100, 110, 130 W: T+2 is interpolated at 120 W."""
        start = _ts(2026, 10, 19, 10, 0, 0)
        sync = SampleSynchronizer(
            ctx, _MeterFeed([(start, 100.0), (start + 1, 110.0), (start + 3, 130.0)]), []
        )
        samples: list[Sample] = []
        while (batch := await sync.next_samples()) is not None:
            samples.extend(batch)

        rollup = RollupAccumulator(ctx)
        for sample in samples[:3]:
            rollup.process(sample)
        assert ctx.hour.consumed == pytest.approx(330.0)
        rollup.process(samples[3])
        ctx.streams.close_day()

        (load_sec,) = _lines(tmp_path / "3EM_load_sec_2026-10-19.csv")
        assert load_sec == "2026-10-19 10:00:00,100,110,,130"
        assert ctx.counters.gaps == 1

    def test_substituted_load_left_empty(self, ctx: CollectorContext, tmp_path: Path) -> None:
        start = _ts(2026, 10, 19, 10, 0, 0)
        last_good = LastKnownGood()
        counters = EventCounters()
        samples = [
            compose(timestamp=start, meter_power=200.0, last_good=last_good, counters=counters),
            compose(timestamp=start + 1, meter_power=-5.0, last_good=last_good, counters=counters),
        ]

        _run(ctx, samples)
        ctx.streams.close_day()

        (load_sec,) = _lines(tmp_path / "3EM_load_sec_2026-10-19.csv")
        assert load_sec == "2026-10-19 10:00:00,200,"
        assert ctx.hour.consumed == pytest.approx(400.0)


# ---------------------------------------------------------------------------
# Rollover
# ---------------------------------------------------------------------------


class TestRollover:
    """Day and year boundaries rotate the output files."""

    def test_day_rollover(self, ctx: CollectorContext, tmp_path: Path) -> None:
        start = _ts(2026, 10, 19, 23, 59, 58)

        _run(ctx, [_sample(start + i) for i in range(4)])
        ctx.streams.close_day()
        ctx.streams.close_year()

        first_day = (tmp_path / "3EM_load_sec_2026-10-19.csv").read_text(encoding="utf-8")
        assert first_day == "2026-10-19 23:59:58,360,360\n"
        (second_day,) = _lines(tmp_path / "3EM_load_sec_2026-10-20.csv")
        assert second_day == "2026-10-20 00:00:00,360,360"

        assert len(_lines(tmp_path / "3EM_status_2026-10-19.csv")) == 3
        assert len(_lines(tmp_path / "3EM_status_2026-10-20.csv")) == 3

        # The hour ending at 23:59:59 is closed, even though incomplete.
        energy = _lines(tmp_path / "3EM_energy_2026.csv")
        assert len(energy) == 2
        assert energy[1].startswith("2026-10-19 23:59:59,")

    def test_year_rollover(self, ctx: CollectorContext, tmp_path: Path) -> None:
        start = _ts(2026, 12, 31, 23, 59, 59)

        _run(ctx, [_sample(start), _sample(start + 1)])
        ctx.streams.close_day()
        ctx.streams.close_year()

        assert (tmp_path / "3EM_load_min_2026.csv").exists()
        assert (tmp_path / "3EM_load_min_2027.csv").read_text(encoding="utf-8") == (
            "2027-01-01 00:00:00"
        )
        assert len(_lines(tmp_path / "3EM_energy_2027.csv")) == 1
        assert (tmp_path / "3EM_log_2027.txt").exists()

    def test_first_sample_does_not_close_minute(
        self, ctx: CollectorContext, tmp_path: Path
    ) -> None:
        _run(ctx, [_sample(_ts(2026, 10, 19, 10, 5, 59))])
        ctx.streams.close_year()

        assert _lines(tmp_path / "3EM_load_min_2026.csv") == ["2026-10-19 10:05:59"]


class TestHeaders:
    """Headers are written only into empty files."""

    def test_header_written_once_across_runs(
        self,
        settings: CollectorSettings,
        context_factory: Callable[[CollectorSettings], CollectorContext],
        tmp_path: Path,
    ) -> None:
        start = _ts(2026, 10, 19, 10, 0, 0)
        for offset in (0, 10):
            ctx = context_factory(settings)
            _run(ctx, [_sample(start + offset)])
            ctx.streams.close_day()
            ctx.streams.close_year()

        status = _lines(tmp_path / "3EM_status_2026-10-19.csv")
        assert [line.startswith("time [") for line in status] == [True, False, False]


class TestBalanceCheck:
    """The hour's balance identities are verified when it closes."""

    def test_consistent_hour_no_warning(
        self, ctx: CollectorContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        start = _ts(2026, 10, 19, 10, 59, 0)

        with caplog.at_level(logging.WARNING):
            _run(ctx, [_sample(start + i, 300.0, pv=500.0) for i in range(60)])

        assert "energy balance" not in caplog.text

    def test_inconsistent_hour_warned(
        self, ctx: CollectorContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        start = _ts(2026, 10, 19, 10, 0, 0)
        samples = [_sample(start + i, 3600.0) for i in range(3600)]
        samples[1800] = samples[1800].model_copy(update={"meter_power": 3600.0 * 10})

        with caplog.at_level(logging.WARNING):
            _run(ctx, samples)

        assert "energy balance = 3609 vs. 3600 = energy consumed + charged" in caplog.text
        assert "energy imported - exported" not in caplog.text

    def test_export_counted(self, ctx: CollectorContext, tmp_path: Path) -> None:
        start = _ts(2026, 10, 19, 10, 0, 0)
        _run(ctx, [_sample(start + i, 360.0, pv=720.0) for i in range(3600)])
        ctx.streams.close_year()

        energy = _lines(tmp_path / "3EM_energy_2026.csv")
        cols = [c.strip() for c in energy[1].split(",")]
        # consumed, produced, charged, discharged, own use, balance, imported, exported
        assert cols[1:9] == ["360", "720", "0", "0", "360", "-360", "0", "360"]


def test_health_updated_each_minute(ctx: CollectorContext, tmp_path: Path) -> None:
    health = HealthWriter(tmp_path / "health.json")
    rollup = RollupAccumulator(ctx, health)
    start = _ts(2026, 10, 19, 10, 0, 0)
    for i in range(60):
        rollup.process(_sample(start + i))

    assert (tmp_path / "health.json").exists()
