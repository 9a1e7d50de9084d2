import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.platform.response import api_response

logger = logging.getLogger(__name__)


class A11yCrawlerError(Exception):
    """Base class for errors raised by the crawler service."""


class ScanConfigError(A11yCrawlerError):
    """Root URL or scan configuration rejected before any phase starts."""


class ScanNotFoundError(A11yCrawlerError):
    def __init__(self, scan_id: str):
        super().__init__(f"Scan {scan_id} not found")
        self.scan_id = scan_id


class ScanNotCompleteError(A11yCrawlerError):
    def __init__(self, scan_id: str, status: str):
        super().__init__(f"Scan {scan_id} is not complete (status: {status})")
        self.scan_id = scan_id
        self.status = status


class ScanInProgressError(A11yCrawlerError):
    def __init__(self, scan_id: str, status: str):
        super().__init__(f"Scan {scan_id} is still {status}; cancel it and delete it once it has stopped")
        self.scan_id = scan_id
        self.status = status


class BrowserUnavailableError(A11yCrawlerError):
    """The page renderer could not be started or was used after close()."""


def add_exception_handlers(app):
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return api_response(message=str(exc.detail) or "Error", status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return api_response(
            message="Validation failed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            data={"errors": exc.errors()},
        )

    @app.exception_handler(ScanConfigError)
    async def scan_config_exception_handler(request: Request, exc: ScanConfigError):
        return api_response(message=str(exc), status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(ScanNotFoundError)
    async def scan_not_found_handler(request: Request, exc: ScanNotFoundError):
        return api_response(message=str(exc), status_code=status.HTTP_404_NOT_FOUND)

    @app.exception_handler(ScanNotCompleteError)
    async def scan_not_complete_handler(request: Request, exc: ScanNotCompleteError):
        return api_response(
            message=str(exc),
            status_code=status.HTTP_400_BAD_REQUEST,
            data={"status": exc.status},
        )

    @app.exception_handler(ScanInProgressError)
    async def scan_in_progress_handler(request: Request, exc: ScanInProgressError):
        return api_response(
            message=str(exc),
            status_code=status.HTTP_409_CONFLICT,
            data={"status": exc.status},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return api_response(
            message="Internal server error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
