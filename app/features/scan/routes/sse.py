"""
SSE (Server-Sent Events) endpoint for real-time scan progress updates.

The worker publishes every pipeline event on the scan's Redis channel; this
endpoint relays them to the browser until the scan completes or fails.
"""
import asyncio
import json
from typing import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from app.features.scan.models.scan import TERMINAL_SCAN_STATUSES, Scan, ScanStatus
from app.features.scan.services.events import SCAN_COMPLETE, SCAN_ERROR, TERMINAL_EVENTS, channel_for
from app.features.scan.services.store import ScanStore, get_store
from app.platform.config import settings
from app.platform.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/scans", tags=["scan"])

STREAM_TIMEOUT_SECONDS = 3600
HEARTBEAT_SECONDS = 30.0


def get_redis():
    """Async Redis client for pub/sub; overridden in tests."""
    return aioredis.from_url(settings.REDIS_URL, decode_responses=True)


def _snapshot(scan: Scan) -> dict:
    return {
        "scan_id": scan.id,
        "status": scan.status.value,
        "total_pages": scan.total_pages,
        "scanned_pages": scan.scanned_pages,
        "total_issues": scan.total_issues,
        "error_message": scan.error_message,
    }


async def scan_progress_stream(scan: Scan, redis_client) -> AsyncGenerator[dict, None]:
    """
    Yield the scan's current state, then every published event.

    Closes after a `scan:complete` / `scan:error` event, or right away when
    the scan is already terminal.
    """
    yield {"event": "scan:status", "data": json.dumps(_snapshot(scan))}

    if scan.status in TERMINAL_SCAN_STATUSES:
        final = SCAN_COMPLETE if scan.status == ScanStatus.complete else SCAN_ERROR
        yield {"event": final, "data": json.dumps({**_snapshot(scan), "final": True})}
        await redis_client.aclose()
        return

    pubsub = redis_client.pubsub()
    channel = channel_for(scan.id)
    try:
        await pubsub.subscribe(channel)
        logger.info(f"SSE: Subscribed to {channel}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STREAM_TIMEOUT_SECONDS

        while loop.time() < deadline:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=HEARTBEAT_SECONDS)
            if not message or message.get("type") != "message":
                yield {"event": "heartbeat", "data": json.dumps({"timestamp": loop.time()})}
                continue

            payload = json.loads(message["data"])
            event_type = payload.get("event_type", "message")
            yield {"event": event_type, "data": json.dumps(payload)}

            if event_type in TERMINAL_EVENTS:
                break
        else:
            logger.info(f"SSE: Connection timeout for scan {scan.id}")
            yield {"event": "timeout", "data": json.dumps({"message": "Connection timeout"})}

    except Exception as e:
        logger.error(f"SSE: Error streaming for scan {scan.id}: {e}", exc_info=True)
        yield {"event": "error", "data": json.dumps({"error": str(e)})}
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis_client.aclose()
        logger.info(f"SSE: Closed connection for scan {scan.id}")


@router.get(
    "/{scan_id}/stream",
    summary="Stream scan progress (SSE)",
    description="""
    Stream real-time scan progress using Server-Sent Events.

    **Event Types** (the SSE `event` field is the pipeline event type):
    - `scan:status`: phase transition (first event is always the current state)
    - `crawl:page:found`, `crawl:progress`: discovery progress
    - `scan:page:complete`, `scan:page:error`, `scan:progress`: scan progress
    - `scan:analyzing`: deduplication started
    - `scan:complete` / `scan:error`: terminal, the connection closes
    - `heartbeat`: keep-alive ping every 30 seconds
    """,
)
async def stream_scan_progress(
    scan_id: str,
    store: ScanStore = Depends(get_store),
    redis_client=Depends(get_redis),
):
    scan = await store.require_scan(scan_id)
    logger.info(f"SSE: Client connected for scan {scan_id}")

    return EventSourceResponse(
        scan_progress_stream(scan, redis_client),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
