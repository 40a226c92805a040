"""adsync push-feed ingestion.

Timezone resolution, per-event conditional upserts, and the async queue
consumer that archives raw messages before ingesting them.
"""
from .consumer import StreamConsumer
from .stream import StreamIngestor
from .timezones import TimezoneResolver, local_date_of

__all__ = [
    "StreamConsumer",
    "StreamIngestor",
    "TimezoneResolver",
    "local_date_of",
]
