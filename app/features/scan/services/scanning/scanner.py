"""
Scan Orchestrator

Runs the accessibility evaluator and the fingerprint engine over every
pending page, `concurrency` pages at a time. A batch is marked `scanning`,
evaluated, then written back in one transaction; progress is reported only
once the whole batch has settled.
"""
import asyncio
from typing import Dict, List

from pydantic import BaseModel

from app.features.scan.models.scan_issue import IssueSeverity
from app.features.scan.models.scan_page import PageStatus, ScanPage
from app.features.scan.schemas.findings import IssueDraft, PageScanOutcome, Violation
from app.features.scan.services import events as ev
from app.features.scan.services.browser.renderer import WCAG_TAGS, BrowserSession, PageRenderer
from app.features.scan.services.fingerprint.fingerprint import (
    compute_region_fingerprints,
    detect_region_from_selector,
)
from app.features.scan.services.orchestration.context import ScanContext
from app.features.scan.services.scanning.deadline import with_deadline, with_fallback
from app.features.scan.services.store import ScanStore
from app.platform.exceptions import BrowserUnavailableError
from app.platform.logger import get_logger

logger = get_logger(__name__)

HTML_SNIPPET_LIMIT = 500

_SEVERITIES = {s.value for s in IssueSeverity}


class ScanPhaseResult(BaseModel):
    total_pages: int = 0
    scanned_pages: int = 0
    error_pages: int = 0
    total_issues: int = 0
    cancelled: bool = False


def issues_from_violations(violations: List[Violation], fingerprints: Dict[str, str]) -> List[IssueDraft]:
    """One issue per violation node, tagged with the node's region and its digest."""
    issues = []
    for violation in violations:
        severity = violation.impact if violation.impact in _SEVERITIES else IssueSeverity.minor.value
        wcag_tags = [t for t in violation.tags if t.startswith("wcag")]
        for node in violation.nodes:
            selector = node.target_selector
            region = detect_region_from_selector(selector)
            issues.append(
                IssueDraft(
                    rule_id=violation.rule_id,
                    description=violation.description or violation.help or violation.rule_id,
                    help=violation.help,
                    help_url=violation.help_url,
                    severity=severity,
                    wcag_tags=wcag_tags,
                    target_selector=selector or None,
                    html_snippet=node.html[:HTML_SNIPPET_LIMIT] if node.html else None,
                    failure_summary=node.failure_summary,
                    dom_region=region,
                    region_fingerprint=fingerprints.get(region),
                )
            )
    return issues


async def scan_pages(
    ctx: ScanContext,
    session: BrowserSession,
    store: ScanStore,
    events: ev.EventSink,
) -> ScanPhaseResult:
    pages = await store.get_pages(ctx.scan_id, statuses=[PageStatus.pending])
    result = ScanPhaseResult(total_pages=len(pages))
    concurrency = ctx.config.concurrency

    logger.info(f"[{ctx.scan_id}] Scanning {len(pages)} pages (concurrency={concurrency})")

    for start in range(0, len(pages), concurrency):
        if await ctx.is_cancelled():
            logger.info(f"[{ctx.scan_id}] Scan halted: cancellation requested")
            result.cancelled = True
            break

        batch = pages[start:start + concurrency]
        await store.mark_pages_scanning([p.id for p in batch])

        outcomes = await asyncio.gather(*[_scan_page(ctx, session, page) for page in batch])
        written = await store.save_scan_results(ctx.scan_id, outcomes)

        result.scanned_pages += len(outcomes)
        result.error_pages += sum(1 for o in outcomes if o.status == PageStatus.error.value)
        result.total_issues += written
        await store.update_scan(ctx.scan_id, scanned_pages=result.scanned_pages)

        for outcome in outcomes:
            if outcome.status == PageStatus.complete.value:
                await ev.emit(
                    events,
                    ev.SCAN_PAGE_COMPLETE,
                    ctx.scan_id,
                    page_id=outcome.page_id,
                    url=outcome.url,
                    issue_count=len(outcome.issues),
                )
            else:
                await ev.emit(
                    events,
                    ev.SCAN_PAGE_ERROR,
                    ctx.scan_id,
                    page_id=outcome.page_id,
                    url=outcome.url,
                    error=outcome.error,
                )

        percentage = round(result.scanned_pages / result.total_pages * 100) if result.total_pages else 100
        await ev.emit(
            events,
            ev.SCAN_PROGRESS,
            ctx.scan_id,
            scanned_pages=result.scanned_pages,
            total_pages=result.total_pages,
            percentage=percentage,
        )

        if start + concurrency < len(pages) and ctx.config.delay_ms:
            await asyncio.sleep(ctx.config.delay_seconds)

    logger.info(
        f"[{ctx.scan_id}] Scan phase finished: {result.scanned_pages}/{result.total_pages} pages, "
        f"{result.error_pages} errors, {result.total_issues} issues"
    )
    return result


async def _fingerprints(renderer: PageRenderer) -> Dict[str, str]:
    region_html = await renderer.evaluate_region_html()
    return compute_region_fingerprints(region_html)


async def _scan_page(ctx: ScanContext, session: BrowserSession, page: ScanPage) -> PageScanOutcome:
    url = page.url
    try:
        async with session.page() as renderer:
            await with_deadline(
                renderer.navigate(url, ctx.navigation_timeout), ctx.navigation_timeout, f"navigation to {url}"
            )
            await asyncio.sleep(ctx.settle_delay)
            if ctx.config.wait_for_selector:
                await with_fallback(
                    renderer.wait_for_selector(ctx.config.wait_for_selector, ctx.wait_for_selector_timeout),
                    ctx.wait_for_selector_timeout,
                    False,
                    f"wait for {ctx.config.wait_for_selector!r}",
                )
            violations = await with_deadline(
                renderer.evaluate_accessibility(WCAG_TAGS),
                ctx.evaluation_timeout,
                f"accessibility evaluation of {url}",
            )
            fingerprints = await with_fallback(
                _fingerprints(renderer), ctx.fingerprint_timeout, {}, f"fingerprinting of {url}"
            )
    except BrowserUnavailableError:
        raise
    except Exception as e:
        logger.warning(f"[{ctx.scan_id}] Page scan failed for {url}: {e}")
        return PageScanOutcome(
            page_id=page.id,
            url=url,
            status=PageStatus.error.value,
            error=str(e) or e.__class__.__name__,
        )

    issues = issues_from_violations(violations, fingerprints)
    logger.debug(f"[{ctx.scan_id}] {url}: {len(issues)} issues, regions={sorted(fingerprints)}")
    return PageScanOutcome(
        page_id=page.id,
        url=url,
        status=PageStatus.complete.value,
        regions_fingerprint=fingerprints,
        issues=issues,
    )
