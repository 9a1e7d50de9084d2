"""
Tests for the crawl coordinator
"""
import pytest
from selenium.common.exceptions import WebDriverException

from app.features.scan.models.scan_page import PageStatus
from app.features.scan.schemas.scan import ScanConfig
from app.features.scan.services import events as ev
from app.features.scan.services.browser.selenium_renderer import SeleniumBrowserSession
from app.features.scan.services.discovery.crawler import crawl
from app.features.scan.services.orchestration.context import ScanContext
from app.platform.exceptions import BrowserUnavailableError

ROOT = "https://example.com/"


async def _crawl(store, site, timings, events=None, cancel_check=None, root=ROOT, **config):
    config.setdefault("delay_ms", 0)
    scan_config = ScanConfig(**config)
    scan = await store.create_scan(root, scan_config)
    ctx = ScanContext(scan.id, root, scan_config, cancel_check=cancel_check, **timings)
    events = events if events is not None else ev.MemoryEventSink()
    async with site(scan_config) as session:
        urls = await crawl(ctx, session, store, events)
    return ctx, urls, events


class TestCrawlScope:

    @pytest.mark.asyncio
    async def test_breadth_first_within_budget(self, store, fake_site, fast_timings):
        """Stops once max_pages pages are recorded"""
        fake_site.add(ROOT, links=["/a", "/b", "/c", "/d"])
        for path in "abcd":
            fake_site.add(f"https://example.com/{path}", links=["/deep"])

        ctx, urls, _ = await _crawl(store, fake_site, fast_timings, max_pages=3, concurrency=1)

        assert urls == [ROOT, "https://example.com/a", "https://example.com/b"]
        assert await store.count_pages(ctx.scan_id) == 3

    @pytest.mark.asyncio
    async def test_depth_limit(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/a"])
        fake_site.add("https://example.com/a", links=["/b"])
        fake_site.add("https://example.com/b")

        _, urls, _ = await _crawl(store, fake_site, fast_timings, max_depth=1)

        assert urls == [ROOT, "https://example.com/a"]
        assert "https://example.com/b" not in fake_site.navigations

    @pytest.mark.asyncio
    async def test_link_filters(self, store, fake_site, fast_timings):
        """Off-origin, non-http, binary and excluded links are never followed"""
        fake_site.add(
            ROOT,
            links=[
                "https://other.example/x",
                "mailto:team@example.com",
                "/files/brochure.pdf",
                "/admin/panel",
                "/about#team",
                "/about/",
                "/about",
            ],
        )
        fake_site.add("https://example.com/about")

        _, urls, _ = await _crawl(store, fake_site, fast_timings, exclude_patterns=["*/admin/*"])

        assert urls == [ROOT, "https://example.com/about"]
        assert fake_site.navigations.count("https://example.com/about") == 1

    @pytest.mark.asyncio
    async def test_pattern_cap(self, store, fake_site, fast_timings):
        links = [f"/news/{n}" for n in range(1, 6)]
        fake_site.add(ROOT, links=links)
        for link in links:
            fake_site.add(f"https://example.com{link}")

        _, urls, _ = await _crawl(store, fake_site, fast_timings, max_pages_per_pattern=3)

        news = [u for u in urls if "/news/" in u]
        assert news == ["https://example.com/news/1", "https://example.com/news/2", "https://example.com/news/3"]


class TestRedirects:

    @pytest.mark.asyncio
    async def test_redirect_recorded_under_final_url(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/old"])
        fake_site.add("https://example.com/old", redirect_to="https://example.com/new")
        fake_site.add("https://example.com/new", title="New")

        ctx, urls, _ = await _crawl(store, fake_site, fast_timings)

        assert urls == [ROOT, "https://example.com/new"]
        assert "https://example.com/new" in ctx.visited

    @pytest.mark.asyncio
    async def test_redirect_onto_visited_url_discarded(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/old", "/new"])
        fake_site.add("https://example.com/old", redirect_to="https://example.com/new")
        fake_site.add("https://example.com/new")

        _, urls, _ = await _crawl(store, fake_site, fast_timings, concurrency=3)

        assert urls == [ROOT, "https://example.com/new"]

    @pytest.mark.asyncio
    async def test_off_origin_redirect_discarded(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/out"])
        fake_site.add("https://example.com/out", redirect_to="https://elsewhere.example/landing")

        _, urls, _ = await _crawl(store, fake_site, fast_timings)

        assert urls == [ROOT]

    @pytest.mark.asyncio
    async def test_root_redirect_to_https_rebases_crawl(self, store, fake_site, fast_timings):
        """An http root that lands on https is kept and its links followed"""
        fake_site.add("http://example.com/", redirect_to=ROOT)
        fake_site.add(ROOT, links=["/a", "http://example.com/b"])
        fake_site.add("https://example.com/a")

        ctx, urls, _ = await _crawl(store, fake_site, fast_timings, root="http://example.com/")

        assert urls == [ROOT, "https://example.com/a"]
        assert ctx.root_url == ROOT
        pages = await store.get_pages(ctx.scan_id)
        assert [p.depth for p in pages] == [0, 1]

    @pytest.mark.asyncio
    async def test_root_redirect_to_www_rebases_crawl(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, redirect_to="https://www.example.com/")
        fake_site.add("https://www.example.com/", links=["/about", "https://example.com/old"])
        fake_site.add("https://www.example.com/about")

        _, urls, _ = await _crawl(store, fake_site, fast_timings)

        assert urls == ["https://www.example.com/", "https://www.example.com/about"]


class TestCrawlFailures:

    @pytest.mark.asyncio
    async def test_browser_unavailable_escapes_crawl(self, store, fast_timings):
        """A browser that cannot start is a crawl fault, not an error page"""
        def no_chrome(config):
            raise WebDriverException("chrome not reachable")

        def site(config):
            return SeleniumBrowserSession(config, driver_factory=no_chrome)

        with pytest.raises(BrowserUnavailableError):
            await _crawl(store, site, fast_timings)

    @pytest.mark.asyncio
    async def test_failed_pages_recorded_as_errors(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/broken", "/missing"])
        fake_site.add("https://example.com/broken", fail_navigation=True)

        ctx, urls, events = await _crawl(store, fake_site, fast_timings)

        assert len(urls) == 3
        errored = await store.get_pages(ctx.scan_id, [PageStatus.error])
        assert [p.url for p in errored] == ["https://example.com/broken", "https://example.com/missing"]
        assert all("ERR_FAILED" in p.error_message for p in errored)

        found = events.of_type(ev.CRAWL_PAGE_FOUND)
        assert [e.data["status"] for e in found] == ["pending", "error", "error"]

    @pytest.mark.asyncio
    async def test_cancellation_stops_before_next_batch(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/a", "/b"])
        fake_site.add("https://example.com/a")
        fake_site.add("https://example.com/b")
        checks = []

        async def cancel_check():
            checks.append(1)
            return len(checks) > 1

        ctx, urls, _ = await _crawl(store, fake_site, fast_timings, cancel_check=cancel_check, concurrency=1)

        assert urls == [ROOT]
        assert ctx.cancelled is True


class TestCrawlBatches:

    @pytest.mark.asyncio
    async def test_concurrency_bounds_open_pages(self, store, fake_site, fast_timings):
        links = [f"/p{n}" for n in range(6)]
        fake_site.add(ROOT, links=links)
        for link in links:
            fake_site.add(f"https://example.com{link}")

        _, urls, events = await _crawl(store, fake_site, fast_timings, concurrency=2)

        assert len(urls) == 7
        assert fake_site.peak_active == 2
        # 1 root batch + 3 batches of two
        assert len(events.of_type(ev.CRAWL_PROGRESS)) == 4

    @pytest.mark.asyncio
    async def test_batch_persisted_before_events(self, store, fake_site, fast_timings):
        fake_site.add(ROOT, links=["/a", "/b"])
        fake_site.add("https://example.com/a")
        fake_site.add("https://example.com/b")

        class PersistenceProbe(ev.MemoryEventSink):
            def __init__(self):
                super().__init__()
                self.stored_at_emit = []

            async def emit(self, event):
                await super().emit(event)
                if event.event_type == ev.CRAWL_PAGE_FOUND:
                    self.stored_at_emit.append(await store.count_pages(event.scan_id))

        probe = PersistenceProbe()
        await _crawl(store, fake_site, fast_timings, events=probe, concurrency=2)

        assert probe.stored_at_emit == [1, 3, 3]
        progress = probe.of_type(ev.CRAWL_PROGRESS)
        assert [e.data["pages_found"] for e in progress] == [1, 3]
