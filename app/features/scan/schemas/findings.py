"""
Values exchanged with the page renderer and between pipeline stages.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class NavigationResult(BaseModel):
    final_url: str
    http_status: Optional[int] = None
    load_time_ms: Optional[int] = None


class ViolationNode(BaseModel):
    target: List[str] = Field(default_factory=list)
    html: str = ""
    failure_summary: Optional[str] = None

    @property
    def target_selector(self) -> str:
        return " ".join(self.target)


class Violation(BaseModel):
    """One axe-core rule violation with the nodes it was found on."""
    rule_id: str
    description: str = ""
    help: Optional[str] = None
    help_url: Optional[str] = None
    impact: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    nodes: List[ViolationNode] = Field(default_factory=list)

    @classmethod
    def from_axe(cls, raw: dict) -> "Violation":
        return cls(
            rule_id=raw.get("id", ""),
            description=raw.get("description") or "",
            help=raw.get("help"),
            help_url=raw.get("helpUrl"),
            impact=raw.get("impact"),
            tags=raw.get("tags") or [],
            nodes=[
                ViolationNode(
                    target=[_selector_part(t) for t in node.get("target") or []],
                    html=node.get("html") or "",
                    failure_summary=node.get("failureSummary"),
                )
                for node in raw.get("nodes") or []
            ],
        )


def _selector_part(target) -> str:
    # axe reports shadow DOM targets as nested lists
    if isinstance(target, list):
        return " ".join(str(t) for t in target)
    return str(target)


class CrawledPage(BaseModel):
    """Outcome of visiting one URL during the crawl phase."""
    url: str
    depth: int = 0
    title: Optional[str] = None
    http_status: Optional[int] = None
    load_time_ms: Optional[int] = None
    links: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class IssueDraft(BaseModel):
    """An issue produced by the scan phase, before it gets an id."""
    rule_id: str
    description: str
    help: Optional[str] = None
    help_url: Optional[str] = None
    severity: str
    wcag_tags: List[str] = Field(default_factory=list)
    target_selector: Optional[str] = None
    html_snippet: Optional[str] = None
    failure_summary: Optional[str] = None
    dom_region: str = "unknown"
    region_fingerprint: Optional[str] = None


class PageScanOutcome(BaseModel):
    page_id: str
    url: str
    status: str  # "complete" | "error"
    regions_fingerprint: Dict[str, str] = Field(default_factory=dict)
    issues: List[IssueDraft] = Field(default_factory=list)
    error: Optional[str] = None
