"""
Scan models package.
"""
from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_page import ScanPage, PageStatus
from app.features.scan.models.scan_issue import ScanIssue, IssueSeverity
from app.features.scan.models.shared_component import SharedComponent, GroupRegion

__all__ = [
    "Scan",
    "ScanStatus",
    "ScanPage",
    "PageStatus",
    "ScanIssue",
    "IssueSeverity",
    "SharedComponent",
    "GroupRegion",
]
