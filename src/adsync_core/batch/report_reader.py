"""Async reader for completed batch report documents.

Reports are gzip-compressed JSON arrays of rows keyed the way the ads
reporting API emits them (``date``, ``campaignId``, ``sales14d`` ...).
"""
import asyncio
import gzip
import json
import logging
import math
import random
import zlib
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional

import aiohttp

from ..exceptions import ReportDownloadError
from ..schemas.performance import BatchRow


logger = logging.getLogger(__name__)


# Attribution-window columns in order of preference
SALES_COLUMNS = ("sales14d", "sales7d", "sales1d", "sales")
ORDER_COLUMNS = ("purchases14d", "purchases7d", "purchases1d", "orders")

GZIP_MAGIC = b"\x1f\x8b"


def _first_present(row: dict, columns: Iterable[str]) -> Any:
    for column in columns:
        value = row.get(column)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(float(value))


def _as_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    return float(value)


def parse_report_rows(raw_rows: Iterable[dict]) -> list[BatchRow]:
    """Map raw report rows to BatchRow.

    Rows without a campaign id or date are dropped. Rows for the same
    (campaign, date) are summed, since reports may split a campaign across
    ad groups.
    """
    totals: dict[tuple[str, str], dict[str, float]] = {}
    dropped = 0

    for raw in raw_rows:
        campaign_id = raw.get("campaignId")
        local_date = raw.get("date")
        if campaign_id in (None, "") or not local_date:
            dropped += 1
            continue

        try:
            metrics = {
                "impressions": _as_int(raw.get("impressions")),
                "clicks": _as_int(raw.get("clicks")),
                "cost": _as_float(raw.get("cost")),
                "sales": _as_float(_first_present(raw, SALES_COLUMNS)),
                "orders": _as_int(_first_present(raw, ORDER_COLUMNS)),
            }
        except (TypeError, ValueError) as exc:
            logger.warning("Dropping report row for campaign %s: %s", campaign_id, exc)
            dropped += 1
            continue

        key = (str(campaign_id), str(local_date)[:10])
        bucket = totals.setdefault(
            key, {"impressions": 0, "clicks": 0, "cost": 0.0, "sales": 0.0, "orders": 0}
        )
        for name, value in metrics.items():
            bucket[name] += value

    if dropped:
        logger.warning("Dropped %s report rows missing campaignId/date", dropped)

    return [
        BatchRow(
            campaign_id=campaign_id,
            local_date=local_date,
            impressions=int(bucket["impressions"]),
            clicks=int(bucket["clicks"]),
            cost=round(bucket["cost"], 6),
            sales=round(bucket["sales"], 6),
            orders=int(bucket["orders"]),
        )
        for (campaign_id, local_date), bucket in sorted(totals.items())
    ]


def decode_report_document(body: bytes) -> list[dict]:
    """Decode a (possibly gzip-compressed) JSON report body into rows.

    Raises:
        ReportDownloadError: If the body is not a JSON array of objects
    """
    try:
        if body[:2] == GZIP_MAGIC:
            body = gzip.decompress(body)
        document = json.loads(body.decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ReportDownloadError(f"Undecodable report document: {exc}") from exc

    if isinstance(document, dict):
        document = document.get("rows", document.get("data"))

    if not isinstance(document, list) or not all(isinstance(r, dict) for r in document):
        raise ReportDownloadError("Report document is not a JSON array of rows")

    return document


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date).

    Returns None when the header is missing or unparseable.
    """
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(seconds, 0.0) if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable Retry-After header: %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class ReportReader:
    """Download completed report documents with retry on 429/5xx/network errors."""

    MAX_RETRY_ATTEMPTS = 6
    RETRY_BASE_DELAY = 0.5  # seconds
    RETRY_MULTIPLIER = 2.0
    RETRY_MAX_DELAY = 30.0  # seconds
    RETRY_JITTER_MS = 250  # milliseconds

    def __init__(self, session: aiohttp.ClientSession) -> None:
        """Initialize reader.

        Args:
            session: Injected aiohttp ClientSession
        """
        self.session = session

    async def fetch_rows(self, url: str) -> list[BatchRow]:
        """Download a report document and parse it into BatchRow values."""
        raw_rows = await self.download(url)
        rows = parse_report_rows(raw_rows)
        logger.info("Parsed %s report rows (%s raw)", len(rows), len(raw_rows))
        return rows

    async def download(self, url: str, retry: bool = True) -> list[dict]:
        """GET a report document.

        Raises:
            ReportDownloadError: On non-retryable errors or retries exhausted
        """
        attempt = 0
        while True:
            attempt += 1

            try:
                timeout = aiohttp.ClientTimeout(total=120, connect=10)
                async with self.session.get(url, timeout=timeout) as resp:
                    if resp.status == 429 or 500 <= resp.status < 600:
                        if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                            raise ReportDownloadError(
                                f"HTTP {resp.status} after {attempt} attempts"
                            )

                        delay = None
                        if resp.status == 429:
                            delay = _retry_after_seconds(resp.headers.get("Retry-After"))
                        if delay is None:
                            delay = self._calculate_backoff(attempt)
                        logger.warning(
                            "Report download HTTP %s, backoff=%.2fs, attempt=%s",
                            resp.status,
                            delay,
                            attempt,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if 400 <= resp.status < 500:
                        text = await resp.text()
                        raise ReportDownloadError(
                            f"HTTP {resp.status} (non-retryable): {text[:500]}"
                        )

                    body = await resp.read()

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                    raise ReportDownloadError(
                        f"Network error after {attempt} attempts: {exc}"
                    ) from exc

                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Report download network error: %s, backoff=%.2fs, attempt=%s",
                    exc,
                    delay,
                    attempt,
                )
                await asyncio.sleep(delay)
                continue

            return decode_report_document(body)

    def _calculate_backoff(self, attempt: int, jitter: Optional[float] = None) -> float:
        """Exponential backoff with jitter (attempt is 1-indexed)."""
        delay = min(
            self.RETRY_BASE_DELAY * (self.RETRY_MULTIPLIER ** (attempt - 1)),
            self.RETRY_MAX_DELAY,
        )
        if jitter is None:
            jitter = random.uniform(0, self.RETRY_JITTER_MS / 1000.0)
        return delay + jitter
