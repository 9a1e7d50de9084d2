"""
Scan Schemas

Request and response models for the scan API endpoints, and the validated
per-scan configuration the pipeline runs with.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.platform.config import settings


class Viewport(BaseModel):
    width: int = Field(default=1280, ge=320, le=3840)
    height: int = Field(default=720, ge=240, le=2160)


def wildcard_to_regex(pattern: str) -> str:
    """Exclude patterns use `*` as the only wildcard; everything else is a regex."""
    return pattern.replace("*", ".*")


class ScanConfig(BaseModel):
    """Crawl/scan knobs stored on the Scan row."""
    max_pages: int = Field(default=100, ge=1, le=500)
    max_depth: int = Field(default=5, ge=1, le=10)
    concurrency: int = Field(default=3, ge=1, le=5)
    delay_ms: int = Field(default=500, ge=0, le=5000)
    exclude_patterns: List[str] = Field(default_factory=list)
    wait_for_selector: Optional[str] = None
    viewport: Viewport = Field(default_factory=Viewport)
    dedup_threshold: float = Field(default_factory=lambda: settings.DEDUP_THRESHOLD, gt=0, le=1)
    max_pages_per_pattern: int = Field(default_factory=lambda: settings.MAX_PAGES_PER_PATTERN, ge=1)

    @field_validator("exclude_patterns")
    @classmethod
    def _patterns_compile(cls, patterns: List[str]) -> List[str]:
        for pattern in patterns:
            try:
                re.compile(wildcard_to_regex(pattern))
            except re.error as e:
                raise ValueError(f"Invalid exclude pattern {pattern!r}: {e}")
        return patterns

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000


class ScanCreateRequest(BaseModel):
    """Request to start a crawl + scan."""
    url: str
    config: ScanConfig = Field(default_factory=ScanConfig)

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com",
                "config": {"max_pages": 50, "max_depth": 3, "concurrency": 3},
            }
        }


class ScanCreateResponse(BaseModel):
    scan_id: str
    status: str
    root_url: str


class PageSummary(BaseModel):
    id: str
    url: str
    title: Optional[str] = None
    status: str
    issue_count: int = 0


class ScanDetail(BaseModel):
    id: str
    root_url: str
    status: str
    config: Dict[str, Any]
    total_pages: int = 0
    scanned_pages: int = 0
    total_issues: int = 0
    total_issues_deduplicated: int = 0
    critical_count: int = 0
    serious_count: int = 0
    moderate_count: int = 0
    minor_count: int = 0
    shared_component_count: int = 0
    score: Optional[float] = None
    error_message: Optional[str] = None
    dedup_error: Optional[str] = None
    cancel_requested: bool = False
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    pages: List[PageSummary] = Field(default_factory=list)
