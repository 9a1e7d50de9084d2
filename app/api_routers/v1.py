from fastapi import APIRouter

from app.features.scan.routes.scan import router as scan_router
from app.features.scan.routes.sse import router as scan_sse_router
from app.features.reports.routes.reports import router as reports_router

api_router = APIRouter()


# Register scan feature routes
api_router.include_router(scan_router)
api_router.include_router(scan_sse_router)

# Register report routes
api_router.include_router(reports_router)
