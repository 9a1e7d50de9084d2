"""
Report Service

Builds the JSON report for a finished scan: the score and severity summary,
the shared component groups with their unique issues, and the issues that
are specific to a single page.
"""
import math
import re
from collections import OrderedDict
from typing import Any, Dict, List

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_issue import SEVERITY_ORDER, ScanIssue
from app.features.scan.models.scan_page import ScanPage
from app.features.scan.models.shared_component import SharedComponent
from app.features.scan.services.store import ScanStore
from app.platform.exceptions import ScanNotCompleteError
from app.platform.logger import get_logger

logger = get_logger(__name__)

SEVERITY_WEIGHTS = {"critical": 25, "serious": 10, "moderate": 3, "minor": 1}
TOP_RULES_LIMIT = 10

_WCAG_CRITERION = re.compile(r"wcag(\d)(\d)(\d)")


def calculate_score(counts: Dict[str, int], total_pages: int) -> int:
    """
    100 minus twice the severity-weighted issue count per page, clamped to
    0..100. Halves round up.
    """
    weighted = sum(weight * counts.get(severity, 0) for severity, weight in SEVERITY_WEIGHTS.items())
    per_page = weighted / max(total_pages, 1)
    return max(0, min(100, math.floor(100 - per_page * 2 + 0.5)))


def extract_wcag_criteria(tags: List[str]) -> List[str]:
    """`wcag143` -> `1.4.3`; level tags like `wcag2aa` yield nothing."""
    criteria = []
    for tag in tags or []:
        match = _WCAG_CRITERION.search(tag)
        if match:
            criterion = ".".join(match.groups())
            if criterion not in criteria:
                criteria.append(criterion)
    return criteria


def _issue_key(issue: ScanIssue) -> str:
    return f"{issue.rule_id}:{issue.target_selector or ''}"


def _issue_body(issue: ScanIssue) -> Dict[str, Any]:
    return {
        "rule_id": issue.rule_id,
        "impact": issue.severity.value,
        "description": issue.description,
        "help": issue.help,
        "target": issue.target_selector or "",
        "html_snippet": issue.html_snippet or "",
        "help_url": issue.help_url or "",
        "wcag_criteria": extract_wcag_criteria(issue.wcag_tags),
    }


class ReportService:

    def __init__(self, store: ScanStore):
        self.store = store

    async def calculate_and_update_score(self, scan_id: str) -> Dict[str, Any]:
        """Refresh the scan's denormalized severity counts and score."""
        scan = await self.store.require_scan(scan_id)
        counts = await self.store.count_issues_by_severity(scan_id)
        score = calculate_score(counts, scan.total_pages)

        fields = {
            "total_issues": counts["total"],
            "critical_count": counts["critical"],
            "serious_count": counts["serious"],
            "moderate_count": counts["moderate"],
            "minor_count": counts["minor"],
            "score": score,
        }
        await self.store.update_scan(scan_id, **fields)
        logger.info(f"[{scan_id}] Score {score} ({counts['total']} issues over {scan.total_pages} pages)")
        return fields

    async def generate_report(self, scan_id: str) -> Dict[str, Any]:
        scan = await self.store.require_scan(scan_id)
        if scan.status != ScanStatus.complete:
            raise ScanNotCompleteError(scan_id, scan.status.value)

        pages = await self.store.get_pages(scan_id)
        issues = await self.store.get_issues(scan_id)
        groups = await self.store.get_groups(scan_id)

        page_urls = {p.id: p.url for p in pages}

        return {
            "scan": scan.to_dict(exclude=["cancel_requested", "celery_task_id"]),
            "summary": self._summary(scan, issues),
            "shared_components": self._shared_components(groups, issues, page_urls),
            "page_specific_issues": self._page_specific(pages, issues),
        }

    def _summary(self, scan: Scan, issues: List[ScanIssue]) -> Dict[str, Any]:
        by_severity = {s.value: 0 for s in SEVERITY_ORDER}
        rules_by_severity = {s.value: set() for s in SEVERITY_ORDER}
        rule_counts: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

        unique_grouped = set()
        ungrouped = 0
        for issue in issues:
            severity = issue.severity.value
            by_severity[severity] += 1
            rules_by_severity[severity].add(issue.rule_id)

            entry = rule_counts.setdefault(issue.rule_id, {"rule_id": issue.rule_id, "count": 0, "impact": severity})
            entry["count"] += 1

            if issue.is_grouped and issue.group_id:
                unique_grouped.add(f"{issue.group_id}:{_issue_key(issue)}")
            else:
                ungrouped += 1

        raw = len(issues)
        deduplicated = len(unique_grouped) + ungrouped
        top_rules = sorted(rule_counts.values(), key=lambda r: r["count"], reverse=True)[:TOP_RULES_LIMIT]

        return {
            "score": calculate_score(by_severity, scan.total_pages),
            "total_pages": scan.total_pages,
            "total_issues_raw": raw,
            "total_issues_deduplicated": deduplicated,
            "deduplicated": scan.dedup_error is None,
            "dedup_error": scan.dedup_error,
            "reduction_percentage": round((raw - deduplicated) / raw * 100, 1) if raw else 0.0,
            "by_severity": by_severity,
            "rule_count_by_severity": {k: len(v) for k, v in rules_by_severity.items()},
            "top_rules": top_rules,
        }

    def _shared_components(
        self,
        groups: List[SharedComponent],
        issues: List[ScanIssue],
        page_urls: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        members: Dict[str, List[ScanIssue]] = {}
        for issue in issues:
            if issue.is_grouped and issue.group_id:
                members.setdefault(issue.group_id, []).append(issue)

        reports = []
        for group in groups:
            unique: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
            for issue in members.get(group.id, []):
                key = _issue_key(issue)
                if key not in unique:
                    unique[key] = {**_issue_body(issue), "affected_pages": 0, "affected_page_urls": []}
                entry = unique[key]
                entry["affected_pages"] += 1
                url = page_urls.get(issue.page_id)
                if url and url not in entry["affected_page_urls"]:
                    entry["affected_page_urls"].append(url)

            reports.append(
                {
                    "id": group.id,
                    "label": group.label,
                    "region": group.region.value,
                    "page_count": group.page_count,
                    "issue_count": group.issue_count,
                    "page_urls": group.page_urls or [],
                    "sample_html": group.sample_html,
                    "issues": list(unique.values()),
                }
            )
        return reports

    def _page_specific(self, pages: List[ScanPage], issues: List[ScanIssue]) -> List[Dict[str, Any]]:
        by_page: Dict[str, List[ScanIssue]] = {}
        for issue in issues:
            if not issue.is_grouped:
                by_page.setdefault(issue.page_id, []).append(issue)

        reports = []
        for page in pages:
            page_issues = by_page.get(page.id)
            if not page_issues:
                continue
            reports.append(
                {
                    "page_id": page.id,
                    "url": page.url,
                    "title": page.title,
                    "issue_count": len(page_issues),
                    "issues": [
                        {**_issue_body(i), "failure_summary": i.failure_summary} for i in page_issues
                    ],
                }
            )

        reports.sort(key=lambda r: r["issue_count"], reverse=True)
        return reports
