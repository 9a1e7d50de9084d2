from sqlalchemy import Boolean, Column, String, Text, ForeignKey, Index, Enum, JSON
import enum

from app.platform.db.base import BaseModel


class IssueSeverity(enum.Enum):
    """Severity tiers, most severe first"""
    critical = "critical"
    serious = "serious"
    moderate = "moderate"
    minor = "minor"


SEVERITY_ORDER = [IssueSeverity.critical, IssueSeverity.serious, IssueSeverity.moderate, IssueSeverity.minor]


class ScanIssue(BaseModel):
    """
    One rule violation on one DOM node of one page.

    `dom_region` + `region_fingerprint` are the key used to match the issue
    against shared regions. `group_id` is set by deduplication and points at
    the SharedComponent the issue was folded into.
    """
    __tablename__ = "scan_issues"

    # Foreign Keys
    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    page_id = Column(String, ForeignKey("scan_pages.id", ondelete="CASCADE"), nullable=False, index=True)

    # Rule
    rule_id = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    help = Column(Text, nullable=True)
    help_url = Column(String(1024), nullable=True)
    severity = Column(Enum(IssueSeverity), nullable=False, index=True)
    wcag_tags = Column(JSON, nullable=True)

    # Element context
    target_selector = Column(String(1024), nullable=True)
    html_snippet = Column(Text, nullable=True)  # truncated to 500 chars
    failure_summary = Column(Text, nullable=True)

    # Region classification
    dom_region = Column(String(32), nullable=True)
    region_fingerprint = Column(String(64), nullable=True)

    # Deduplication result
    is_grouped = Column(Boolean, default=False, nullable=False)
    group_id = Column(String, ForeignKey("shared_components.id", ondelete="SET NULL"), nullable=True, index=True)

    __table_args__ = (
        Index('idx_scan_issues_grouping', 'scan_id', 'is_grouped', 'group_id'),
    )
