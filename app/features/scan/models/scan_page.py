from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index, JSON, Enum
import enum

from app.platform.db.base import BaseModel


class PageStatus(enum.Enum):
    pending = "pending"
    scanning = "scanning"
    complete = "complete"
    error = "error"


TERMINAL_PAGE_STATUSES = {PageStatus.complete, PageStatus.error}


class ScanPage(BaseModel):
    """
    One discovered URL within a scan.

    `regions_fingerprint` maps region name (header, nav, footer, aside, main,
    body) to a structural sha256 digest; regions missing from the page have
    no entry. It is written once, when the page reaches `complete`.
    """
    __tablename__ = "scan_pages"

    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)

    # Normalized URL
    url = Column(String(2048), nullable=False)
    title = Column(String(512), nullable=True)
    depth = Column(Integer, default=0, nullable=False)

    status = Column(Enum(PageStatus), default=PageStatus.pending, nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    # HTTP metadata
    http_status = Column(Integer, nullable=True)
    load_time_ms = Column(Integer, nullable=True)

    # Issue counts (aggregated)
    issue_count = Column(Integer, default=0, nullable=False)
    page_specific_issue_count = Column(Integer, default=0, nullable=False)

    regions_fingerprint = Column(JSON, nullable=True)

    scanned_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_scan_pages_scan_url', 'scan_id', 'url'),
    )
