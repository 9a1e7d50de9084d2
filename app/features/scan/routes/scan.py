from fastapi import APIRouter, Depends, Query, status

from app.features.scan.schemas.scan import (
    PageSummary,
    ScanCreateRequest,
    ScanCreateResponse,
    ScanDetail,
)
from app.features.scan.services.scan.scan import (
    Enqueue,
    cancel_scan,
    delete_scan,
    enqueue_scan_pipeline,
    start_scan,
)
from app.features.scan.services.store import ScanStore, get_store
from app.platform.logger import get_logger
from app.platform.response import api_response

logger = get_logger(__name__)

router = APIRouter(prefix="/scans", tags=["scan"])


def get_enqueue() -> Enqueue:
    return enqueue_scan_pipeline


def _scan_detail(scan, pages=None) -> ScanDetail:
    data = scan.to_dict()
    data["pages"] = [
        PageSummary(
            id=p.id,
            url=p.url,
            title=p.title,
            status=p.status.value,
            issue_count=p.issue_count,
        )
        for p in pages or []
    ]
    return ScanDetail(**data)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_scan(
    request: ScanCreateRequest,
    store: ScanStore = Depends(get_store),
    enqueue: Enqueue = Depends(get_enqueue),
):
    """
    Start a crawl + accessibility scan of a site.

    The scan runs in the background; follow it with `GET /scans/{id}/stream`
    or poll `GET /scans/{id}`.
    """
    scan = await start_scan(store, request, enqueue)
    return api_response(
        data=ScanCreateResponse(scan_id=scan.id, status=scan.status.value, root_url=scan.root_url),
        message="Scan queued",
        status_code=status.HTTP_201_CREATED,
    )


@router.get("")
async def list_scans(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    store: ScanStore = Depends(get_store),
):
    scans = await store.list_scans(limit=limit, offset=offset)
    return api_response(
        data={
            "items": [_scan_detail(s) for s in scans],
            "limit": limit,
            "offset": offset,
        },
        message="Scans retrieved",
    )


@router.get("/{scan_id}")
async def get_scan(scan_id: str, store: ScanStore = Depends(get_store)):
    scan = await store.require_scan(scan_id)
    pages = await store.get_pages(scan_id)
    return api_response(data=_scan_detail(scan, pages), message="Scan retrieved")


@router.delete("/{scan_id}")
async def remove_scan(scan_id: str, store: ScanStore = Depends(get_store)):
    await delete_scan(store, scan_id)
    return api_response(data={"scan_id": scan_id}, message="Scan deleted successfully.")


@router.post("/{scan_id}/cancel")
async def request_cancel(scan_id: str, store: ScanStore = Depends(get_store)):
    scan = await cancel_scan(store, scan_id)
    return api_response(
        data={"scan_id": scan.id, "status": scan.status.value, "cancel_requested": scan.cancel_requested},
        message="Cancellation requested",
    )
