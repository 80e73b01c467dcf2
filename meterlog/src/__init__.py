"""
Energy meter telemetry collector.

Polls a Shelly 3EM energy meter and optional PV, charger and discharge
power endpoints once per second, derives the household load, and keeps
per-second, per-minute, per-hour and per-year CSV aggregates that survive
restarts.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
