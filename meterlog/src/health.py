"""
Health file writer for the collector.

Writes a JSON health file at a configurable path with:
- last_sample_ts: ISO timestamp of the most recent genuine meter sample.
- written_ts: ISO timestamp of the write itself.
- seconds / gaps / duplicates / backward_steps / substitutions: event counters.
- misses: per-source count of seconds without auxiliary data.

The file is rewritten at every minute boundary and at shutdown, providing a
simple liveness signal that cron jobs or monitoring can inspect.

CHANGELOG:
- 2026-10-19: Report collector event counters instead of spool state
- 2026-02-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from meterlog.src.models import EventCounters


class HealthWriter:
    """Writes collector health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def update(self, counters: EventCounters, last_sample_ts: int) -> None:
        """Rewrite the health file from the current counters.

        Args:
            counters: Event counters of the run.
            last_sample_ts: Unix seconds of the latest genuine sample, 0 if none.
        """
        data = {
            "last_sample_ts": (
                datetime.fromtimestamp(last_sample_ts, tz=UTC).isoformat()
                if last_sample_ts
                else None
            ),
            "written_ts": datetime.now(tz=UTC).isoformat(),
            "seconds": counters.seconds,
            "gaps": counters.gaps,
            "duplicates": counters.duplicates,
            "backward_steps": counters.backward_steps,
            "substitutions": counters.substitutions,
            "misses": dict(counters.misses),
        }
        self.path.write_text(json.dumps(data))
