import asyncio

from app.features.scan.services.browser.selenium_renderer import SeleniumBrowserSession
from app.features.scan.services.events import RedisEventSink
from app.features.scan.services.orchestration.pipeline import run_scan
from app.features.scan.services.store import ScanStore
from app.platform.celery_app import celery_app
from app.platform.db.session import build_engine, build_session_factory
from app.platform.logger import get_logger

logger = get_logger(__name__)


async def _run_scan_async(scan_id: str) -> str:
    """
    Run the pipeline on a fresh engine and Redis connection.

    asyncio.run() gives every task its own event loop, so nothing bound to a
    previous loop (pooled connections, redis clients) may be reused here.
    """
    engine = build_engine()
    events = RedisEventSink()
    try:
        store = ScanStore(build_session_factory(engine))
        status = await run_scan(scan_id, store, SeleniumBrowserSession, events)
        return status.value
    finally:
        await events.close()
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="app.features.scan.workers.tasks.run_scan_pipeline"
)
def run_scan_pipeline(self, scan_id: str) -> dict:
    """
    Crawl, scan and deduplicate one scan.

    No automatic retry: a failed scan is terminal and is restarted by
    submitting a new one.

    Args:
        scan_id: The scan ID

    Returns:
        The scan id and the terminal status it reached
    """
    logger.info(f"[{scan_id}] Starting scan pipeline (task={self.request.id})")
    status = asyncio.run(_run_scan_async(scan_id))
    logger.info(f"[{scan_id}] Scan pipeline finished with status {status}")
    return {"scan_id": scan_id, "status": status}
