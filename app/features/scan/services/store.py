"""
Scan Store

Persistence for scans, pages, issues and shared component groups. Every
method opens its own session; methods that write several rows do so in a
single transaction so readers never observe a half-written batch.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_issue import IssueSeverity, ScanIssue
from app.features.scan.models.scan_page import PageStatus, ScanPage
from app.features.scan.models.shared_component import GroupRegion, SharedComponent
from app.features.scan.schemas.findings import CrawledPage, PageScanOutcome
from app.features.scan.schemas.scan import ScanConfig
from app.platform.db.session import get_session_factory
from app.platform.exceptions import ScanNotFoundError
from app.platform.logger import get_logger

logger = get_logger(__name__)


class ScanStore:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ── Scans ───────────────────────────────────

    async def create_scan(self, root_url: str, config: ScanConfig) -> Scan:
        async with self.session_factory() as db:
            scan = Scan(root_url=root_url, status=ScanStatus.pending, config=config.model_dump())
            db.add(scan)
            await db.commit()
            await db.refresh(scan)
            return scan

    async def get_scan(self, scan_id: str) -> Optional[Scan]:
        async with self.session_factory() as db:
            result = await db.execute(select(Scan).where(Scan.id == scan_id))
            return result.scalar_one_or_none()

    async def require_scan(self, scan_id: str) -> Scan:
        scan = await self.get_scan(scan_id)
        if scan is None:
            raise ScanNotFoundError(scan_id)
        return scan

    async def list_scans(self, limit: int = 50, offset: int = 0) -> List[Scan]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Scan).order_by(Scan.created_at.desc(), Scan.id.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all())

    async def update_scan(self, scan_id: str, **fields) -> None:
        async with self.session_factory() as db:
            await db.execute(update(Scan).where(Scan.id == scan_id).values(**fields))
            await db.commit()

    async def set_status(self, scan_id: str, status: ScanStatus, **fields) -> None:
        if status == ScanStatus.crawling:
            fields.setdefault("started_at", datetime.utcnow())
        elif status in (ScanStatus.complete, ScanStatus.failed):
            fields.setdefault("completed_at", datetime.utcnow())
        await self.update_scan(scan_id, status=status, **fields)

    async def request_cancel(self, scan_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Scan).where(Scan.id == scan_id).values(cancel_requested=True)
            )
            await db.commit()
            return result.rowcount > 0

    async def is_cancel_requested(self, scan_id: str) -> bool:
        """A scan deleted from under its worker reads as cancelled."""
        async with self.session_factory() as db:
            result = await db.execute(select(Scan.cancel_requested).where(Scan.id == scan_id))
            flag = result.scalar_one_or_none()
            return flag is None or bool(flag)

    async def delete_scan(self, scan_id: str) -> bool:
        """Delete a scan with all its issues, groups and pages."""
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(delete(ScanIssue).where(ScanIssue.scan_id == scan_id))
                await db.execute(delete(SharedComponent).where(SharedComponent.scan_id == scan_id))
                await db.execute(delete(ScanPage).where(ScanPage.scan_id == scan_id))
                result = await db.execute(delete(Scan).where(Scan.id == scan_id))
                return result.rowcount > 0

    # ── Pages ───────────────────────────────────

    async def add_crawled_pages(self, scan_id: str, crawled: Sequence[CrawledPage]) -> List[ScanPage]:
        """Record one crawl batch: successes as `pending`, failures as `error`."""
        pages = []
        for item in crawled:
            page = ScanPage(
                scan_id=scan_id,
                url=item.url,
                depth=item.depth,
                title=item.title or None,
                http_status=item.http_status,
                load_time_ms=item.load_time_ms,
                status=PageStatus.pending if item.ok else PageStatus.error,
                error_message=item.error,
                scanned_at=None if item.ok else datetime.utcnow(),
            )
            pages.append(page)

        if not pages:
            return pages
        async with self.session_factory() as db:
            async with db.begin():
                db.add_all(pages)
        return pages

    async def get_pages(self, scan_id: str, statuses: Optional[Iterable[PageStatus]] = None) -> List[ScanPage]:
        query = select(ScanPage).where(ScanPage.scan_id == scan_id)
        if statuses is not None:
            query = query.where(ScanPage.status.in_(list(statuses)))
        async with self.session_factory() as db:
            result = await db.execute(query.order_by(ScanPage.url, ScanPage.id))
            return list(result.scalars().all())

    async def get_page(self, page_id: str) -> Optional[ScanPage]:
        async with self.session_factory() as db:
            result = await db.execute(select(ScanPage).where(ScanPage.id == page_id))
            return result.scalar_one_or_none()

    async def count_pages(self, scan_id: str, statuses: Optional[Iterable[PageStatus]] = None) -> int:
        query = select(func.count(ScanPage.id)).where(ScanPage.scan_id == scan_id)
        if statuses is not None:
            query = query.where(ScanPage.status.in_(list(statuses)))
        async with self.session_factory() as db:
            result = await db.execute(query)
            return result.scalar_one()

    async def mark_pages_scanning(self, page_ids: Sequence[str]) -> None:
        if not page_ids:
            return
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(ScanPage).where(ScanPage.id.in_(list(page_ids))).values(status=PageStatus.scanning)
                )

    async def save_scan_results(self, scan_id: str, outcomes: Sequence[PageScanOutcome]) -> int:
        """
        Persist one scan batch in a single transaction: page status,
        fingerprints and counts, plus a bulk insert of every issue.
        Returns the number of issues written.
        """
        now = datetime.utcnow()
        issues = []
        async with self.session_factory() as db:
            async with db.begin():
                for outcome in outcomes:
                    values = {"status": PageStatus(outcome.status), "scanned_at": now}
                    if outcome.status == PageStatus.complete.value:
                        values.update(
                            regions_fingerprint=outcome.regions_fingerprint,
                            issue_count=len(outcome.issues),
                            page_specific_issue_count=sum(
                                1 for i in outcome.issues if i.dom_region in ("main", "unknown")
                            ),
                        )
                    else:
                        values.update(error_message=outcome.error, issue_count=0)
                    await db.execute(update(ScanPage).where(ScanPage.id == outcome.page_id).values(**values))

                    for draft in outcome.issues:
                        issues.append(
                            ScanIssue(
                                scan_id=scan_id,
                                page_id=outcome.page_id,
                                severity=IssueSeverity(draft.severity),
                                **draft.model_dump(exclude={"severity"}),
                            )
                        )
                db.add_all(issues)
        return len(issues)

    # ── Issues ──────────────────────────────────

    async def get_issues(self, scan_id: str) -> List[ScanIssue]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScanIssue).where(ScanIssue.scan_id == scan_id).order_by(ScanIssue.page_id, ScanIssue.id)
            )
            return list(result.scalars().all())

    async def get_issues_for_page(self, page_id: str) -> List[ScanIssue]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScanIssue).where(ScanIssue.page_id == page_id).order_by(ScanIssue.id)
            )
            return list(result.scalars().all())

    async def count_issues_by_severity(self, scan_id: str) -> Dict[str, int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScanIssue.severity, func.count(ScanIssue.id))
                .where(ScanIssue.scan_id == scan_id)
                .group_by(ScanIssue.severity)
            )
            counts = {severity.value: 0 for severity in IssueSeverity}
            for severity, count in result.all():
                counts[severity.value] = count
            counts["total"] = sum(counts.values())
            return counts

    # ── Shared component groups ─────────────────

    async def replace_groups(
        self,
        scan_id: str,
        groups: Sequence[SharedComponent],
        assignments: Dict[str, str],
    ) -> None:
        """
        Swap the scan's deduplication result in one transaction.

        `assignments` maps issue id -> group id; every other issue of the scan
        ends up ungrouped.
        """
        by_group: Dict[str, List[str]] = {}
        for issue_id, group_id in assignments.items():
            by_group.setdefault(group_id, []).append(issue_id)

        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(ScanIssue)
                    .where(ScanIssue.scan_id == scan_id)
                    .values(is_grouped=False, group_id=None)
                )
                await db.execute(delete(SharedComponent).where(SharedComponent.scan_id == scan_id))
                db.add_all(groups)
                await db.flush()
                for group_id, issue_ids in by_group.items():
                    await db.execute(
                        update(ScanIssue)
                        .where(ScanIssue.id.in_(issue_ids))
                        .values(is_grouped=True, group_id=group_id)
                    )
        logger.debug(f"[{scan_id}] Stored {len(groups)} groups covering {len(assignments)} issues")

    async def get_groups(self, scan_id: str) -> List[SharedComponent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SharedComponent)
                .where(SharedComponent.scan_id == scan_id)
                .order_by(SharedComponent.region, SharedComponent.id)
            )
            return list(result.scalars().all())

    async def count_groups(self, scan_id: str, region: Optional[GroupRegion] = None) -> int:
        query = select(func.count(SharedComponent.id)).where(SharedComponent.scan_id == scan_id)
        if region is not None:
            query = query.where(SharedComponent.region == region)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return result.scalar_one()


def get_store() -> ScanStore:
    """FastAPI dependency: a store bound to the application's engine."""
    return ScanStore(get_session_factory())
