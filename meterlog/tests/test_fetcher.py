"""
Unit tests for the HTTP fetcher.

Tests verify:
- Source URLs and Basic auth for meter, switches and the DTU.
- fetch_once classifies timeouts, connection errors, HTTP errors, proxy
  error pages, non-JSON bodies and shape mismatches.
- fetch_primary retries until success and returns None on shutdown.
- A missing meter unixtime is approximated from the uptime difference.
- fetch_auxiliary makes one attempt and returns None on failure.

CHANGELOG:
- 2026-10-19: Fetch classification and retry policies
- 2026-02-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from zoneinfo import ZoneInfo

import httpx
import pytest

from meterlog.src.config import CollectorSettings
from meterlog.src.fetcher import (
    Source,
    SourceFetcher,
    auxiliary_sources,
    fetch_once,
    meter_source,
)
from meterlog.src.models import FailureKind, FetchFailure, Reading, SourceKind
from meterlog.tests.payloads import meter_status, switch_status

UTC_ZONE = ZoneInfo("UTC")

METER = Source(kind=SourceKind.METER, url="http://3em/status")
PV = Source(kind=SourceKind.PV, url="http://pv/rpc/Shelly.GetStatus", user="u", password="p")


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Source definitions
# ---------------------------------------------------------------------------


class TestSources:
    """Endpoints built from settings."""

    def test_meter_source(self) -> None:
        settings = CollectorSettings(meter_addr="3em.local", meter_user="admin", meter_pass="pw")

        source = meter_source(settings)

        assert source.url == "http://3em.local/status"
        assert isinstance(source.auth, httpx.BasicAuth)

    def test_no_credentials_no_auth(self) -> None:
        assert meter_source(CollectorSettings(meter_addr="3em")).auth is None

    def test_auxiliary_sources_in_order(self) -> None:
        settings = CollectorSettings(
            meter_addr="3em",
            pv_addr="pv",
            chg_addr="chg",
            dtu_addr="dtu",
            dtu_serial="1164",
            dis_user="dtuadmin",
        )

        sources = auxiliary_sources(settings)

        assert [s.kind for s in sources] == [
            SourceKind.PV,
            SourceKind.CHARGER,
            SourceKind.DISCHARGE_INVERTER,
        ]
        assert sources[0].url == "http://pv/rpc/Shelly.GetStatus"
        assert sources[2].url == "http://dtu/api/livedata/status?inv=1164"
        assert sources[2].serial == "1164"
        assert sources[2].user == "dtuadmin"

    def test_unconfigured_sources_skipped(self) -> None:
        assert auxiliary_sources(CollectorSettings(meter_addr="3em")) == []


# ---------------------------------------------------------------------------
# fetch_once classification
# ---------------------------------------------------------------------------


class TestFetchOnce:
    """One request yields a Reading or a classified FetchFailure."""

    @pytest.mark.asyncio
    async def test_meter_reading(self) -> None:
        async with _client(lambda request: httpx.Response(200, json=meter_status())) as client:
            result = await fetch_once(client, METER)

        assert isinstance(result, Reading)
        assert result.timestamp == 1760868000

    @pytest.mark.asyncio
    async def test_switch_sends_basic_auth(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=switch_status())

        async with _client(handler) as client:
            result = await fetch_once(client, PV)

        assert isinstance(result, Reading)
        assert result.kind is SourceKind.PV
        expected = "Basic " + base64.b64encode(b"u:p").decode()
        assert seen[0].headers["Authorization"] == expected

    @pytest.mark.asyncio
    async def test_timeout_classified(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timeout", request=request)

        async with _client(handler) as client:
            result = await fetch_once(client, METER)

        assert isinstance(result, FetchFailure)
        assert result.kind is FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connect_error_classified(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            result = await fetch_once(client, METER)

        assert isinstance(result, FetchFailure)
        assert result.kind is FailureKind.TRANSIENT_NETWORK

    @pytest.mark.asyncio
    async def test_http_error_status_classified(self) -> None:
        async with _client(lambda request: httpx.Response(401, text="Unauthorized")) as client:
            result = await fetch_once(client, METER)

        assert isinstance(result, FetchFailure)
        assert result.kind is FailureKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_proxy_error_page_classified(self, caplog: pytest.LogCaptureFixture) -> None:
        body = "<html>ERROR: The requested URL could not be retrieved</html>"
        with caplog.at_level(logging.WARNING):
            async with _client(lambda request: httpx.Response(200, text=body)) as client:
                result = await fetch_once(client, METER)

        assert isinstance(result, FetchFailure)
        assert result.kind is FailureKind.MALFORMED_RESPONSE
        assert "skipping error response" in caplog.text

    @pytest.mark.asyncio
    async def test_non_json_classified(self) -> None:
        async with _client(lambda request: httpx.Response(200, text="{not json")) as client:
            result = await fetch_once(client, METER)

        assert isinstance(result, FetchFailure)
        assert result.kind is FailureKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_shape_mismatch_classified(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            async with _client(lambda request: httpx.Response(200, json={"x": 1})) as client:
                result = await fetch_once(client, METER)

        assert isinstance(result, FetchFailure)
        assert result.kind is FailureKind.PARSE_MISMATCH
        assert "error parsing 3EM status response" in caplog.text

    @pytest.mark.asyncio
    async def test_long_response_excerpt_truncated(self) -> None:
        body = "x" * 5000
        async with _client(lambda request: httpx.Response(200, text=body)) as client:
            result = await fetch_once(client, PV)

        assert isinstance(result, FetchFailure)
        assert len(result.detail) == 800


# ---------------------------------------------------------------------------
# Retry policies
# ---------------------------------------------------------------------------


class TestFetchPrimary:
    """The meter is retried until it answers."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        responses = [
            httpx.Response(500, text="busy"),
            httpx.Response(200, text="garbage"),
            httpx.Response(200, json=meter_status()),
        ]

        async with _client(lambda request: responses.pop(0)) as client:
            fetcher = SourceFetcher(
                client, meter=METER, tz=UTC_ZONE, retry_delay_s=0, clock=lambda: 1760868000.0
            )
            reading = await fetcher.fetch_primary()

        assert reading is not None
        assert reading.timestamp == 1760868000
        assert responses == []

    @pytest.mark.asyncio
    async def test_shutdown_returns_none(self) -> None:
        shutdown = asyncio.Event()
        shutdown.set()

        async with _client(lambda request: httpx.Response(200, json=meter_status())) as client:
            fetcher = SourceFetcher(client, meter=METER, tz=UTC_ZONE, shutdown_event=shutdown)
            assert await fetcher.fetch_primary() is None

    @pytest.mark.asyncio
    async def test_shutdown_during_retry_pause(self) -> None:
        shutdown = asyncio.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            shutdown.set()
            return httpx.Response(503, text="unavailable")

        async with _client(handler) as client:
            fetcher = SourceFetcher(
                client, meter=METER, tz=UTC_ZONE, shutdown_event=shutdown, retry_delay_s=10
            )
            assert await asyncio.wait_for(fetcher.fetch_primary(), timeout=2) is None

    @pytest.mark.asyncio
    async def test_missing_unixtime_approximated_from_uptime(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        first = meter_status(unixtime=1760868000)
        second = meter_status(unixtime=0)
        second["uptime"] = first["uptime"] + 2
        responses = [httpx.Response(200, json=first), httpx.Response(200, json=second)]

        async with _client(lambda request: responses.pop(0)) as client:
            fetcher = SourceFetcher(
                client, meter=METER, tz=UTC_ZONE, clock=lambda: 1760868000.0
            )
            await fetcher.fetch_primary()
            with caplog.at_level(logging.WARNING):
                reading = await fetcher.fetch_primary()

        assert reading is not None
        assert reading.timestamp == 1760868002
        assert "approximating missing 3EM status unixtime" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_unixtime_without_history_discarded(self) -> None:
        responses = [
            httpx.Response(200, json=meter_status(unixtime=0)),
            httpx.Response(200, json=meter_status(unixtime=1760868005)),
        ]

        async with _client(lambda request: responses.pop(0)) as client:
            fetcher = SourceFetcher(
                client, meter=METER, tz=UTC_ZONE, retry_delay_s=0, clock=lambda: 1760868005.0
            )
            reading = await fetcher.fetch_primary()

        assert reading is not None
        assert reading.timestamp == 1760868005

    @pytest.mark.asyncio
    async def test_clock_mismatch_warned_once(self, caplog: pytest.LogCaptureFixture) -> None:
        async with _client(lambda request: httpx.Response(200, json=meter_status())) as client:
            fetcher = SourceFetcher(
                client, meter=METER, tz=UTC_ZONE, clock=lambda: 1760868100.0
            )
            with caplog.at_level(logging.WARNING):
                await fetcher.fetch_primary()
                await fetcher.fetch_primary()

        assert caplog.text.count("does not closely match host system time") == 1


class TestFetchAuxiliary:
    """Optional sources get a single attempt."""

    @pytest.mark.asyncio
    async def test_failure_returns_none_after_one_attempt(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("unreachable", request=request)

        async with _client(handler) as client:
            fetcher = SourceFetcher(client, meter=METER, tz=UTC_ZONE)
            assert await fetcher.fetch_auxiliary(PV) is None

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_success_returns_reading(self) -> None:
        async with _client(lambda request: httpx.Response(200, json=switch_status(55.0))) as client:
            fetcher = SourceFetcher(client, meter=METER, tz=UTC_ZONE)
            reading = await fetcher.fetch_auxiliary(PV)

        assert reading is not None
        assert reading.power == 55.0
