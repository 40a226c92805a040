"""Queue consumer: archive raw push messages, then ingest them.

Raw messages are appended to an immutable JSONL audit log before ingestion so
that any cell can be rebuilt from what was actually delivered.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import aiofiles

from ..schemas.performance import BatchOutcome
from .stream import StreamIngestor


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StreamConsumer:
    """Async entry point for batches pulled from the push-feed queue."""

    def __init__(
        self,
        ingestor: StreamIngestor,
        raw_dir: Path,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize consumer.

        Args:
            ingestor: Stream ingestor owning the conditional writes
            raw_dir: Directory for raw JSONL audit logs
            clock: UTC clock, injectable for tests
        """
        self.ingestor = ingestor
        self.raw_dir = Path(raw_dir)
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock

    def archive_path(self, account_id: str, received_at: datetime) -> Path:
        return self.raw_dir / f"raw_push_{account_id}_{received_at.date().isoformat()}.jsonl"

    async def archive(self, messages: list[dict], account_id: str) -> Path:
        """Append raw messages to the day's JSONL audit log."""
        received_at = self.clock()
        path = self.archive_path(account_id, received_at)

        async with aiofiles.open(path, mode="a", encoding="utf-8") as handle:
            for message in messages:
                envelope = {
                    "source": "push",
                    "account_id": account_id,
                    "received_at": received_at.isoformat(),
                    "message": message,
                }
                await handle.write(
                    json.dumps(envelope, separators=(",", ":"), default=str) + "\n"
                )

        logger.debug("Archived %s raw messages to %s", len(messages), path)
        return path

    async def handle(
        self,
        messages: list[dict],
        account_id: str,
        tz_name: Optional[str] = None,
    ) -> BatchOutcome:
        """Archive and ingest one delivery batch.

        Archive failures are logged and do not block ingestion.

        Returns:
            BatchOutcome counts from the ingestor
        """
        if not messages:
            return BatchOutcome()

        try:
            await self.archive(messages, account_id)
        except OSError as exc:
            logger.error("Failed to archive raw push messages for %s: %s", account_id, exc)

        return await asyncio.to_thread(
            self.ingestor.process_batch, messages, account_id, tz_name
        )
