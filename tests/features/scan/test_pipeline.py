"""
End-to-end tests for the scan pipeline over the in-memory fake site
"""
from unittest.mock import MagicMock, patch

import pytest
from selenium.common.exceptions import WebDriverException

from app.features.scan.models.scan import ScanStatus
from app.features.scan.models.scan_page import PageStatus
from app.features.scan.models.shared_component import GroupRegion
from app.features.scan.schemas.scan import ScanConfig
from app.features.scan.services import events as ev
from app.features.scan.services.browser.selenium_renderer import SeleniumBrowserSession
from app.features.scan.services.orchestration.pipeline import CANCELLED_MESSAGE, run_scan
from app.platform.config import settings

ROOT = "https://example.com/"
HEADER = "<header><img src='/logo.png'><a href='/'>Home</a></header>"


def _shared_header_site(site, make_violation, make_html):
    """Three pages sharing one header with a missing alt text."""
    violation = make_violation("image-alt", "critical", "header > img")
    site.add(ROOT, title="Home", links=["/a", "/b"], html=make_html(header=HEADER), violations=[violation])
    site.add("https://example.com/a", title="A", html=make_html(header=HEADER), violations=[violation])
    site.add("https://example.com/b", title="B", html=make_html(header=HEADER), violations=[violation])


async def _start(store, **config):
    config.setdefault("delay_ms", 0)
    scan = await store.create_scan(ROOT, ScanConfig(**config))
    return scan.id


class TestPipelineHappyPath:

    @pytest.mark.asyncio
    async def test_shared_header_collapses_to_one_issue(self, store, fake_site, fast_timings, make_violation, make_html):
        """Same header bug on three pages is reported once"""
        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)
        events = ev.MemoryEventSink()

        status = await run_scan(scan_id, store, fake_site, events, **fast_timings)

        assert status == ScanStatus.complete
        scan = await store.get_scan(scan_id)
        assert scan.status == ScanStatus.complete
        assert scan.total_pages == 3
        assert scan.scanned_pages == 3
        assert scan.total_issues == 3
        assert scan.total_issues_deduplicated == 1
        assert scan.shared_component_count == 1
        assert scan.critical_count == 3
        assert scan.score == 50
        assert scan.dedup_error is None
        assert scan.started_at is not None and scan.completed_at is not None

        (group,) = await store.get_groups(scan_id)
        assert group.region == GroupRegion.header
        assert group.label == "Site Header"
        assert group.page_count == 3
        assert group.issue_count == 1

    @pytest.mark.asyncio
    async def test_phases_in_order_with_separate_sessions(self, store, fake_site, fast_timings, make_violation, make_html):
        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)
        events = ev.MemoryEventSink()

        await run_scan(scan_id, store, fake_site, events, **fast_timings)

        statuses = [e.data["status"] for e in events.of_type(ev.SCAN_STATUS)]
        assert statuses == ["crawling", "scanning", "analyzing", "complete"]
        assert events.events[-1].event_type == ev.SCAN_COMPLETE
        assert events.events[-1].data["total_issues_deduplicated"] == 1
        # One session per browser phase, each closed when its phase ends
        assert len(fake_site.sessions) == 2
        assert all(s.closed for s in fake_site.sessions)

    @pytest.mark.asyncio
    async def test_every_page_failing_still_completes(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, fail_navigation=True)
        scan_id = await _start(store)

        status = await run_scan(scan_id, store, fake_site, **fast_timings)

        assert status == ScanStatus.complete
        scan = await store.get_scan(scan_id)
        assert scan.total_pages == 1
        assert scan.total_issues == 0
        assert scan.score == 100
        assert await store.count_pages(scan_id, [PageStatus.error]) == 1

    @pytest.mark.asyncio
    async def test_rerun_of_dedup_is_stable(self, store, fake_site, fast_timings, make_violation, make_html):
        from app.features.scan.services.dedup.deduplication import DeduplicationService

        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)
        await run_scan(scan_id, store, fake_site, **fast_timings)
        before = [(g.id, g.fingerprint) for g in await store.get_groups(scan_id)]

        summary = await DeduplicationService(store).analyze(scan_id)

        assert [(g.id, g.fingerprint) for g in await store.get_groups(scan_id)] == before
        assert summary.total_issues_deduplicated == 1


class TestPipelineFailures:

    @pytest.mark.asyncio
    async def test_dedup_failure_completes_ungrouped(self, store, fake_site, fast_timings, make_violation, make_html):
        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)

        with patch(
            "app.features.scan.services.orchestration.pipeline.DeduplicationService.analyze",
            side_effect=RuntimeError("layer exploded"),
        ):
            status = await run_scan(scan_id, store, fake_site, **fast_timings)

        assert status == ScanStatus.complete
        scan = await store.get_scan(scan_id)
        assert scan.dedup_error == "layer exploded"
        assert scan.total_issues == 3
        assert scan.total_issues_deduplicated == 3
        assert scan.shared_component_count == 0
        assert not any(i.is_grouped for i in await store.get_issues(scan_id))

    @pytest.mark.asyncio
    async def test_chrome_that_cannot_start_fails_scan(self, store, fake_site, fast_timings, make_violation, make_html):
        """No page is recorded as an error page; the whole scan fails"""
        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)
        events = ev.MemoryEventSink()

        def no_chrome(config):
            raise WebDriverException("chrome not reachable")

        status = await run_scan(
            scan_id, store, lambda config: SeleniumBrowserSession(config, driver_factory=no_chrome), events, **fast_timings
        )

        assert status == ScanStatus.failed
        scan = await store.get_scan(scan_id)
        assert scan.error_message.startswith("Could not start Chrome")
        assert scan.score is None
        assert scan.completed_at is not None
        assert await store.count_pages(scan_id) == 0
        assert events.events[-1].event_type == ev.SCAN_ERROR

    @pytest.mark.asyncio
    async def test_missing_axe_script_fails_scan(self, store, fake_site, fast_timings, make_violation, make_html):
        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)

        def headless_driver(config):
            driver = MagicMock()
            driver.current_url = ROOT
            driver.title = "Home"
            driver.execute_script.return_value = None
            return driver

        def factory(config):
            # The crawl runs on the fake site, the scan phase on Selenium
            if fake_site.sessions:
                return SeleniumBrowserSession(config, driver_factory=headless_driver)
            return fake_site(config)

        with patch.object(settings, "AXE_SCRIPT_PATH", "/nonexistent/axe.min.js"):
            status = await run_scan(scan_id, store, factory, **fast_timings)

        assert status == ScanStatus.failed
        scan = await store.get_scan(scan_id)
        assert "AXE_SCRIPT_PATH" in scan.error_message
        assert await store.count_pages(scan_id, [PageStatus.complete]) == 0
    @pytest.mark.asyncio
    async def test_cancel_between_phases(self, store, fake_site, fast_timings, make_violation, make_html):
        """A cancel observed after the crawl stops the scan before any page is evaluated"""
        _shared_header_site(fake_site, make_violation, make_html)
        scan_id = await _start(store)

        class CancelAfterCrawl(ev.MemoryEventSink):
            async def emit(self, event):
                await super().emit(event)
                if event.event_type == ev.CRAWL_PROGRESS and event.data["queue_size"] == 0:
                    await store.request_cancel(event.scan_id)

        status = await run_scan(scan_id, store, fake_site, CancelAfterCrawl(), **fast_timings)

        assert status == ScanStatus.failed
        scan = await store.get_scan(scan_id)
        assert scan.error_message == CANCELLED_MESSAGE
        assert scan.total_pages == 3
        assert await store.count_pages(scan_id, [PageStatus.pending]) == 3
        assert fake_site.evaluated_tags == []

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, store, fake_site, fast_timings):
        fake_site.add(ROOT)
        scan_id = await _start(store)
        await store.request_cancel(scan_id)

        status = await run_scan(scan_id, store, fake_site, **fast_timings)

        assert status == ScanStatus.failed
        assert (await store.get_scan(scan_id)).error_message == CANCELLED_MESSAGE
        assert fake_site.navigations == []
