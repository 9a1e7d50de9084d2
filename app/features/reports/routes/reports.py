from fastapi import APIRouter, Depends

from app.features.reports.services.report_service import ReportService
from app.features.scan.services.store import ScanStore, get_store
from app.platform.response import api_response

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/{scan_id}", status_code=200)
async def get_report(scan_id: str, store: ScanStore = Depends(get_store)):
    """
    Full accessibility report of a completed scan: summary and score, shared
    component groups, and issues specific to single pages.
    """
    report = await ReportService(store).generate_report(scan_id)
    return api_response(data=report, message="Report generated")
