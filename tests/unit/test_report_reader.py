"""Unit tests for ReportReader (mocked aiohttp, no real downloads)."""
import asyncio
import gzip
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from src.adsync_core.batch.report_reader import (
    ReportReader,
    decode_report_document,
    parse_report_rows,
)
from src.adsync_core.exceptions import ReportDownloadError


ROWS = [
    {
        "date": "2024-01-15",
        "campaignId": 111,
        "impressions": "1000",
        "clicks": 20,
        "cost": 12.5,
        "sales14d": 80.0,
        "sales7d": 70.0,
        "purchases14d": 4,
    },
    {
        "date": "2024-01-15",
        "campaignId": 111,
        "impressions": 500,
        "clicks": 5,
        "cost": 2.5,
        "sales7d": 10.0,
        "purchases1d": 1,
    },
    {"date": "2024-01-15", "campaignId": 222, "impressions": 10, "sales": 3.0, "orders": 1},
    {"date": "2024-01-15", "impressions": 99},
]


def _response(status, body=b"", headers=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.read.return_value = body
    response.text.return_value = body.decode("utf-8", errors="replace")
    return response


def _session(*responses):
    session = MagicMock()
    contexts = []
    for response in responses:
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=None)
        contexts.append(context)
    session.get.side_effect = contexts
    return session


def test_parse_report_rows_prefers_longest_attribution_window():
    rows = parse_report_rows(ROWS)

    assert len(rows) == 2
    first = rows[0]
    assert first.campaign_id == "111"
    assert first.impressions == 1500
    assert first.clicks == 25
    assert first.cost == pytest.approx(15.0)
    assert first.sales == pytest.approx(90.0)
    assert first.orders == 5

    second = rows[1]
    assert second.campaign_id == "222"
    assert second.sales == pytest.approx(3.0)
    assert second.orders == 1


def test_decode_gzip_and_plain_documents():
    payload = json.dumps(ROWS).encode("utf-8")

    assert decode_report_document(gzip.compress(payload)) == ROWS
    assert decode_report_document(payload) == ROWS
    assert decode_report_document(json.dumps({"rows": ROWS}).encode()) == ROWS


def test_decode_rejects_non_array():
    with pytest.raises(ReportDownloadError):
        decode_report_document(b'{"status": "PENDING"}')

    with pytest.raises(ReportDownloadError):
        decode_report_document(b"\x1f\x8bnot really gzip")


@pytest.mark.asyncio
async def test_fetch_rows_success():
    session = _session(_response(200, gzip.compress(json.dumps(ROWS).encode())))
    reader = ReportReader(session)

    rows = await reader.fetch_rows("https://reports.example.com/r1.json.gz")

    assert [row.campaign_id for row in rows] == ["111", "222"]


@pytest.mark.asyncio
async def test_download_retries_on_429_and_5xx():
    session = _session(
        _response(429, headers={"Retry-After": "0"}),
        _response(503),
        _response(200, json.dumps(ROWS).encode()),
    )
    reader = ReportReader(session)

    with patch("asyncio.sleep", new=AsyncMock()) as sleep:
        rows = await reader.download("https://reports.example.com/r1")

    assert rows == ROWS
    assert session.get.call_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_download_4xx_not_retried():
    session = _session(_response(403, b"expired signature"))
    reader = ReportReader(session)

    with pytest.raises(ReportDownloadError, match="403"):
        await reader.download("https://reports.example.com/r1")

    assert session.get.call_count == 1


@pytest.mark.asyncio
async def test_download_gives_up_after_max_attempts():
    reader = ReportReader(MagicMock())
    reader.MAX_RETRY_ATTEMPTS = 2
    reader.session = _session(*[_response(500) for _ in range(3)])

    with patch("asyncio.sleep", new=AsyncMock()):
        with pytest.raises(ReportDownloadError, match="after 3 attempts"):
            await reader.download("https://reports.example.com/r1")


@pytest.mark.asyncio
async def test_download_network_error_retried():
    session = MagicMock()
    ok_context = MagicMock()
    ok_context.__aenter__ = AsyncMock(return_value=_response(200, json.dumps(ROWS).encode()))
    ok_context.__aexit__ = AsyncMock(return_value=None)
    session.get.side_effect = [aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError(), ok_context]
    reader = ReportReader(session)

    with patch("asyncio.sleep", new=AsyncMock()):
        rows = await reader.download("https://reports.example.com/r1")

    assert rows == ROWS


@pytest.mark.asyncio
async def test_download_honours_http_date_retry_after():
    session = _session(
        _response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
        _response(200, json.dumps(ROWS).encode()),
    )
    reader = ReportReader(session)

    with patch("asyncio.sleep", new=AsyncMock()) as sleep:
        rows = await reader.download("https://reports.example.com/r1")

    assert rows == ROWS
    sleep.assert_awaited_once_with(0.0)


@pytest.mark.asyncio
async def test_download_garbage_retry_after_falls_back_to_backoff():
    reader = ReportReader(MagicMock())
    reader.MAX_RETRY_ATTEMPTS = 1
    reader.session = _session(
        _response(429, headers={"Retry-After": "soon"}),
        _response(429, headers={"Retry-After": "soon"}),
    )

    with patch("asyncio.sleep", new=AsyncMock()) as sleep:
        with pytest.raises(ReportDownloadError, match="429"):
            await reader.download("https://reports.example.com/r1")

    delay = sleep.await_args.args[0]
    assert 0.5 <= delay <= 0.5 + reader.RETRY_JITTER_MS / 1000.0


def test_backoff_is_capped():
    reader = ReportReader(MagicMock())

    assert reader._calculate_backoff(1, jitter=0) == pytest.approx(0.5)
    assert reader._calculate_backoff(3, jitter=0) == pytest.approx(2.0)
    assert reader._calculate_backoff(20, jitter=0) == pytest.approx(30.0)
