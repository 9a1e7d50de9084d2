from sqlalchemy import Column, String, Integer, Text, ForeignKey, JSON, Enum
import enum

from app.platform.db.base import BaseModel


class GroupRegion(enum.Enum):
    header = "header"
    nav = "nav"
    footer = "footer"
    aside = "aside"
    repeated_element = "repeated-element"
    duplicate_page = "duplicate-page"


class SharedComponent(BaseModel):
    """
    Output unit of deduplication: a set of issues reported once across the
    pages it spans. Issues point back at the group through ScanIssue.group_id.
    """
    __tablename__ = "shared_components"

    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)

    region = Column(Enum(GroupRegion), nullable=False)
    fingerprint = Column(Text, nullable=False)
    label = Column(String(512), nullable=True)

    page_count = Column(Integer, default=0, nullable=False)
    issue_count = Column(Integer, default=0, nullable=False)  # distinct (rule, selector) keys
    sample_html = Column(Text, nullable=True)
    page_urls = Column(JSON, nullable=True)
