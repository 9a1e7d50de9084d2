"""
Scan Pipeline

Drives one scan through its phases, strictly in order:

    crawling   -> discover pages (own browser session, closed afterwards)
    scanning   -> evaluate pending pages (fresh browser session)
    analyzing  -> deduplicate issues across pages
    complete   -> score and counts persisted

A phase fault ends the scan `failed`; a deduplication fault does not, the
scan completes with its issues ungrouped and `dedup_error` set.
"""
from typing import Optional

from app.features.reports.services.report_service import ReportService
from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_page import PageStatus
from app.features.scan.schemas.scan import ScanConfig
from app.features.scan.services import events as ev
from app.features.scan.services.browser.renderer import BrowserSessionFactory
from app.features.scan.services.dedup.deduplication import DeduplicationService
from app.features.scan.services.discovery.crawler import crawl
from app.features.scan.services.orchestration.context import ScanContext
from app.features.scan.services.scanning.scanner import scan_pages
from app.features.scan.services.store import ScanStore
from app.platform.logger import get_logger

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Scan cancelled by user"


class ScanCancelled(Exception):
    pass


class ScanPipeline:

    def __init__(
        self,
        store: ScanStore,
        session_factory: BrowserSessionFactory,
        events: Optional[ev.EventSink] = None,
        **context_overrides,
    ):
        self.store = store
        self.session_factory = session_factory
        self.events = events or ev.NullEventSink()
        self.context_overrides = context_overrides

    def build_context(self, scan: Scan) -> ScanContext:
        return ScanContext(
            scan_id=scan.id,
            root_url=scan.root_url,
            config=ScanConfig(**(scan.config or {})),
            cancel_check=lambda: self.store.is_cancel_requested(scan.id),
            **self.context_overrides,
        )

    async def run(self, scan_id: str) -> ScanStatus:
        """Run every phase of `scan_id`; returns the terminal status reached."""
        scan = await self.store.require_scan(scan_id)
        ctx = self.build_context(scan)

        try:
            await self._crawl_phase(ctx)
            await self._scan_phase(ctx)
            await self._analyze_phase(ctx)
        except ScanCancelled:
            return await self._fail(scan_id, CANCELLED_MESSAGE)
        except Exception as e:
            logger.error(f"[{scan_id}] Pipeline failed: {e}", exc_info=True)
            return await self._fail(scan_id, str(e) or e.__class__.__name__)

        return await self._complete(ctx)

    async def _set_status(self, scan_id: str, status: ScanStatus, **fields) -> None:
        await self.store.set_status(scan_id, status, **fields)
        await ev.emit(self.events, ev.SCAN_STATUS, scan_id, status=status.value)

    async def _crawl_phase(self, ctx: ScanContext) -> None:
        await self._set_status(ctx.scan_id, ScanStatus.crawling)
        async with self.session_factory(ctx.config) as session:
            await crawl(ctx, session, self.store, self.events)

        total_pages = await self.store.count_pages(ctx.scan_id)
        await self.store.update_scan(ctx.scan_id, total_pages=total_pages)
        if ctx.cancelled:
            raise ScanCancelled()

    async def _scan_phase(self, ctx: ScanContext) -> None:
        await self._set_status(ctx.scan_id, ScanStatus.scanning)
        async with self.session_factory(ctx.config) as session:
            result = await scan_pages(ctx, session, self.store, self.events)
        if result.cancelled:
            raise ScanCancelled()

        # Deduplication needs every page settled
        unsettled = await self.store.count_pages(
            ctx.scan_id, statuses=[PageStatus.pending, PageStatus.scanning]
        )
        if unsettled:
            raise RuntimeError(f"{unsettled} pages did not reach a terminal state")

    async def _analyze_phase(self, ctx: ScanContext) -> None:
        await self._set_status(ctx.scan_id, ScanStatus.analyzing)
        await ev.emit(self.events, ev.SCAN_ANALYZING, ctx.scan_id)

        complete_pages = await self.store.count_pages(ctx.scan_id, statuses=[PageStatus.complete])
        service = DeduplicationService(self.store, threshold=ctx.config.dedup_threshold)
        try:
            summary = await service.analyze(ctx.scan_id)
        except Exception as e:
            logger.error(f"[{ctx.scan_id}] Deduplication failed, leaving issues ungrouped: {e}", exc_info=True)
            raw = (await self.store.count_issues_by_severity(ctx.scan_id))["total"]
            await self.store.update_scan(
                ctx.scan_id,
                dedup_error=str(e) or e.__class__.__name__,
                total_issues_deduplicated=raw,
                shared_component_count=0,
                scanned_pages=complete_pages,
            )
            return

        await self.store.update_scan(
            ctx.scan_id,
            dedup_error=None,
            total_issues_deduplicated=summary.total_issues_deduplicated,
            shared_component_count=summary.group_count,
            scanned_pages=complete_pages,
        )

    async def _complete(self, ctx: ScanContext) -> ScanStatus:
        counts = await ReportService(self.store).calculate_and_update_score(ctx.scan_id)
        await self._set_status(ctx.scan_id, ScanStatus.complete)

        scan = await self.store.require_scan(ctx.scan_id)
        await ev.emit(
            self.events,
            ev.SCAN_COMPLETE,
            ctx.scan_id,
            score=counts["score"],
            total_pages=scan.total_pages,
            total_issues=scan.total_issues,
            total_issues_deduplicated=scan.total_issues_deduplicated,
            shared_component_count=scan.shared_component_count,
            deduplicated=scan.dedup_error is None,
        )
        logger.info(f"[{ctx.scan_id}] Scan complete (score={counts['score']})")
        return ScanStatus.complete

    async def _fail(self, scan_id: str, message: str) -> ScanStatus:
        await self._set_status(scan_id, ScanStatus.failed, error_message=message)
        await ev.emit(self.events, ev.SCAN_ERROR, scan_id, error=message)
        logger.warning(f"[{scan_id}] Scan failed: {message}")
        return ScanStatus.failed


async def run_scan(
    scan_id: str,
    store: ScanStore,
    session_factory: BrowserSessionFactory,
    events: Optional[ev.EventSink] = None,
    **context_overrides,
) -> ScanStatus:
    return await ScanPipeline(store, session_factory, events, **context_overrides).run(scan_id)
