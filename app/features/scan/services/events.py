"""
Scan progress events.

The pipeline only sees an EventSink. Emission is fire-and-forget: a sink
never raises into the caller, a failed publish is logged and dropped.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from app.platform.config import settings
from app.platform.logger import get_logger

logger = get_logger(__name__)

# Phase transitions
SCAN_STATUS = "scan:status"
SCAN_ANALYZING = "scan:analyzing"
SCAN_COMPLETE = "scan:complete"
SCAN_ERROR = "scan:error"
# Page discovered / scanned
CRAWL_PAGE_FOUND = "crawl:page:found"
SCAN_PAGE_COMPLETE = "scan:page:complete"
SCAN_PAGE_ERROR = "scan:page:error"
# Batch progress
CRAWL_PROGRESS = "crawl:progress"
SCAN_PROGRESS = "scan:progress"

TERMINAL_EVENTS = {SCAN_COMPLETE, SCAN_ERROR}


def channel_for(scan_id: str) -> str:
    return f"scan_progress:{scan_id}"


class ScanEvent(BaseModel):
    event_type: str
    scan_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_message(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "scan_id": self.scan_id,
            "timestamp": self.timestamp,
            **self.data,
        }


class EventSink(Protocol):
    async def emit(self, event: ScanEvent) -> None:
        ...


class NullEventSink:
    async def emit(self, event: ScanEvent) -> None:
        return None


class MemoryEventSink:
    """Keeps every event in order; handy for tests and local runs."""

    def __init__(self):
        self.events: List[ScanEvent] = []

    async def emit(self, event: ScanEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[ScanEvent]:
        return [e for e in self.events if e.event_type == event_type]


class RedisEventSink:
    """Publishes each event as JSON on the scan's pub/sub channel."""

    def __init__(self, redis_url: Optional[str] = None, client=None):
        self._client = client or aioredis.from_url(redis_url or settings.REDIS_URL)

    async def emit(self, event: ScanEvent) -> None:
        try:
            await self._client.publish(channel_for(event.scan_id), json.dumps(event.to_message()))
            logger.debug(f"[{event.scan_id}] Published event: {event.event_type}")
        except Exception as e:
            logger.error(f"[{event.scan_id}] Failed to publish event '{event.event_type}': {e}")

    async def close(self) -> None:
        await self._client.aclose()


async def emit(sink: EventSink, event_type: str, scan_id: str, **data) -> None:
    try:
        await sink.emit(ScanEvent(event_type=event_type, scan_id=scan_id, data=data))
    except Exception as e:
        logger.error(f"[{scan_id}] Event sink rejected '{event_type}': {e}")
