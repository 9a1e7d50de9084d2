from typing import Callable, Optional
from urllib.parse import urlparse

from app.features.scan.models.scan import TERMINAL_SCAN_STATUSES, Scan, ScanStatus
from app.features.scan.schemas.scan import ScanCreateRequest
from app.features.scan.services.discovery.url_utils import normalize_url
from app.features.scan.services.orchestration.pipeline import CANCELLED_MESSAGE
from app.features.scan.services.store import ScanStore
from app.platform.celery_app import celery_app
from app.platform.exceptions import ScanConfigError, ScanInProgressError
from app.platform.logger import get_logger

logger = get_logger(__name__)

# Takes a scan id, returns the Celery task id
Enqueue = Callable[[str], Optional[str]]


def validate_scan_request(url: str) -> str:
    """
    Reject a root URL the crawler cannot start from.

    A bare host (`example.com`) is accepted and assumed https. Returns the
    normalized root URL. Raises ScanConfigError before any phase starts.
    """
    if not url or not url.strip():
        raise ScanConfigError("URL cannot be empty")

    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parsed = urlparse(candidate)
    except ValueError as e:
        raise ScanConfigError(f"URL parsing error: {e}")

    if parsed.scheme not in ("http", "https"):
        raise ScanConfigError(f"Invalid URL scheme: {parsed.scheme} (must be http or https)")
    if not parsed.hostname:
        raise ScanConfigError("Invalid URL format: missing domain")

    return normalize_url(candidate)


def enqueue_scan_pipeline(scan_id: str) -> Optional[str]:
    from app.features.scan.workers.tasks import run_scan_pipeline

    task = run_scan_pipeline.delay(scan_id)
    return task.id


async def start_scan(store: ScanStore, request: ScanCreateRequest, enqueue: Enqueue = enqueue_scan_pipeline) -> Scan:
    root_url = validate_scan_request(request.url)
    scan = await store.create_scan(root_url, request.config)

    task_id = enqueue(scan.id)
    if task_id:
        await store.update_scan(scan.id, celery_task_id=task_id)
        scan.celery_task_id = task_id

    logger.info(f"[{scan.id}] Scan queued for {root_url} (task={task_id})")
    return scan


async def cancel_scan(store: ScanStore, scan_id: str) -> Scan:
    """
    Ask a scan to stop. A running scan halts before its next batch; a scan
    that never left the queue is failed right away and its task revoked.
    """
    scan = await store.require_scan(scan_id)

    if scan.status in TERMINAL_SCAN_STATUSES:
        logger.info(f"[{scan_id}] Cancel ignored: already {scan.status.value}")
        return scan

    await store.request_cancel(scan_id)

    if scan.status == ScanStatus.pending:
        _revoke(scan)
        await store.set_status(scan_id, ScanStatus.failed, error_message=CANCELLED_MESSAGE)
    else:
        logger.info(f"[{scan_id}] Cancellation requested during {scan.status.value}")

    return await store.require_scan(scan_id)


def _revoke(scan: Scan) -> None:
    if not scan.celery_task_id:
        return
    try:
        celery_app.control.revoke(scan.celery_task_id)
        logger.info(f"[{scan.id}] Revoked Celery task {scan.celery_task_id}")
    except Exception as e:
        logger.error(f"[{scan.id}] Error revoking Celery task {scan.celery_task_id}: {e}")


async def delete_scan(store: ScanStore, scan_id: str) -> None:
    """
    Delete a scan with its pages, issues and groups.

    A queued scan has its task revoked first. A scan a worker is running is
    refused with ScanInProgressError until it reaches a terminal status.
    """
    scan = await store.require_scan(scan_id)
    if scan.status == ScanStatus.pending:
        _revoke(scan)
    elif scan.status not in TERMINAL_SCAN_STATUSES:
        raise ScanInProgressError(scan_id, scan.status.value)
    await store.delete_scan(scan_id)
    logger.info(f"[{scan_id}] Scan deleted")
