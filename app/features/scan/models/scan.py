from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, JSON, String, Text, Enum
import enum

from app.platform.db.base import BaseModel


class ScanStatus(enum.Enum):
    """Scan status state machine"""
    pending = "pending"
    crawling = "crawling"
    scanning = "scanning"
    analyzing = "analyzing"
    complete = "complete"
    failed = "failed"


TERMINAL_SCAN_STATUSES = {ScanStatus.complete, ScanStatus.failed}


class Scan(BaseModel):
    """
    One crawl + scan + deduplication run over a site.

    Owns its pages, issues and shared component groups; deleting a scan
    removes all of them (see ScanStore.delete_scan).
    """
    __tablename__ = "scans"

    root_url = Column(String(2048), nullable=False)

    # Job status (state machine)
    status = Column(Enum(ScanStatus), default=ScanStatus.pending, nullable=False, index=True)

    # Validated ScanConfig, stored as JSON
    config = Column(JSON, nullable=False)

    # Error tracking
    error_message = Column(Text, nullable=True)
    dedup_error = Column(Text, nullable=True)  # deduplication threw; issues left ungrouped
    cancel_requested = Column(Boolean, default=False, nullable=False)

    # Phase results
    total_pages = Column(Integer, default=0, nullable=False)
    scanned_pages = Column(Integer, default=0, nullable=False)

    # Issue counts (denormalized)
    total_issues = Column(Integer, default=0, nullable=False)
    total_issues_deduplicated = Column(Integer, default=0, nullable=False)
    critical_count = Column(Integer, default=0, nullable=False)
    serious_count = Column(Integer, default=0, nullable=False)
    moderate_count = Column(Integer, default=0, nullable=False)
    minor_count = Column(Integer, default=0, nullable=False)
    shared_component_count = Column(Integer, default=0, nullable=False)

    score = Column(Float, nullable=True)  # 0-100

    celery_task_id = Column(String(128), nullable=True, index=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_scans_status', 'status'),
    )
