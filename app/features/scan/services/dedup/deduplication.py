"""
Deduplication Service

Loads a scan's complete pages and issues, runs the four grouping layers from a
clean slate and swaps the result into the store in one transaction. Running it
again over the same rows reproduces the same groups under the same ids.
"""
import uuid
from typing import Dict, List, Optional

from pydantic import BaseModel

from app.features.scan.models.scan_page import PageStatus
from app.features.scan.models.shared_component import SharedComponent
from app.features.scan.services.dedup.layers import (
    GroupDraft,
    IssueSnapshot,
    PageSnapshot,
    run_layers,
)
from app.features.scan.services.store import ScanStore
from app.platform.config import settings
from app.platform.logger import get_logger

logger = get_logger(__name__)

_GROUP_NAMESPACE = uuid.UUID("6f1c1f64-5b0e-4d55-9a55-2f6c7a0d3e11")


def group_id_for(scan_id: str, draft: GroupDraft) -> str:
    return str(uuid.uuid5(_GROUP_NAMESPACE, f"{scan_id}|{draft.region.value}|{draft.fingerprint}"))


class DedupSummary(BaseModel):
    total_pages: int
    total_issues_raw: int
    total_issues_deduplicated: int
    group_count: int


class DeduplicationService:

    def __init__(
        self,
        store: ScanStore,
        threshold: Optional[float] = None,
        min_shared_pages: Optional[int] = None,
    ):
        self.store = store
        self.threshold = threshold if threshold is not None else settings.DEDUP_THRESHOLD
        self.min_shared_pages = min_shared_pages if min_shared_pages is not None else settings.DEDUP_MIN_SHARED_PAGES

    async def analyze(self, scan_id: str) -> DedupSummary:
        logger.info(f"[{scan_id}] Starting deduplication (threshold={self.threshold})")

        pages = await self.store.get_pages(scan_id, statuses=[PageStatus.complete])
        issues = await self.store.get_issues(scan_id)

        page_snapshots = [
            PageSnapshot(
                id=p.id,
                url=p.url,
                title=p.title,
                regions_fingerprint=p.regions_fingerprint or {},
            )
            for p in pages
        ]
        issue_snapshots = [
            IssueSnapshot(
                id=i.id,
                page_id=i.page_id,
                rule_id=i.rule_id,
                target_selector=i.target_selector,
                dom_region=i.dom_region,
                region_fingerprint=i.region_fingerprint,
                html_snippet=i.html_snippet,
            )
            for i in issues
        ]

        drafts = run_layers(page_snapshots, issue_snapshots, self.threshold, self.min_shared_pages)

        groups: List[SharedComponent] = []
        assignments: Dict[str, str] = {}
        for draft in drafts:
            group_id = group_id_for(scan_id, draft)
            groups.append(
                SharedComponent(
                    id=group_id,
                    scan_id=scan_id,
                    region=draft.region,
                    fingerprint=draft.fingerprint,
                    label=draft.label,
                    page_count=draft.page_count,
                    issue_count=draft.issue_count,
                    sample_html=draft.sample_html,
                    page_urls=draft.page_urls,
                )
            )
            for issue_id in draft.issue_ids:
                assignments[issue_id] = group_id

        await self.store.replace_groups(scan_id, groups, assignments)

        ungrouped = len(issues) - len(assignments)
        summary = DedupSummary(
            total_pages=len(pages),
            total_issues_raw=len(issues),
            total_issues_deduplicated=ungrouped + sum(d.issue_count for d in drafts),
            group_count=len(groups),
        )
        logger.info(
            f"[{scan_id}] Deduplication complete: {summary.group_count} groups, "
            f"{summary.total_issues_raw} -> {summary.total_issues_deduplicated} issues"
        )
        return summary
