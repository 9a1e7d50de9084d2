"""
Test configuration and fixtures for the A11y Crawler API.

Provides an in-memory SQLite store per test, a scripted fake browser that
serves a small site from memory, and HTTP clients for the API.
"""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Dict, Generator, List, Optional

# Must be set before app.platform.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="a11y-crawler-logs-")
os.environ["ENVIRONMENT"] = "local"

import pytest
import httpx
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.features.scan.schemas.findings import NavigationResult, Violation
from app.features.scan.schemas.scan import ScanConfig
from app.features.scan.services.browser.renderer import BrowserSession, PageRenderer
from app.features.scan.services.discovery.url_utils import normalize_url
from app.features.scan.services.fingerprint.fingerprint import extract_regions
from app.features.scan.services.store import ScanStore, get_store
from app.platform.db.session import build_session_factory, init_db


# ── Store ───────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine) -> ScanStore:
    return ScanStore(build_session_factory(engine))


# ── Fake browser ────────────────────────────────


def axe_violation(rule_id: str, impact: str, *targets: str, tags: Optional[List[str]] = None, html: str = "<img>") -> dict:
    """A violation shaped like axe-core's `results.violations[]` entries."""
    return {
        "id": rule_id,
        "impact": impact,
        "description": f"{rule_id} description",
        "help": f"{rule_id} help",
        "helpUrl": f"https://dequeuniversity.com/rules/axe/4.8/{rule_id}",
        "tags": tags if tags is not None else ["wcag2a", "wcag111", "cat.text-alternatives"],
        "nodes": [
            {"target": [target], "html": html, "failureSummary": "Fix any of the following"}
            for target in targets
        ],
    }


def page_html(header: str = "<header><a href='/'>Logo</a></header>", main: Optional[str] = "<main><p>x</p></main>", extra: str = "") -> str:
    main = main or ""
    return f"<html><head><title>t</title></head><body>{header}{main}{extra}</body></html>"


class FakePage:
    def __init__(
        self,
        title: str = "Page",
        html: Optional[str] = None,
        links: Optional[List[str]] = None,
        violations: Optional[List[dict]] = None,
        redirect_to: Optional[str] = None,
        fail_navigation: bool = False,
        hang_evaluation: bool = False,
        hang_fingerprint: bool = False,
    ):
        self.title = title
        self.html = html if html is not None else page_html()
        self.links = links or []
        self.violations = violations or []
        self.redirect_to = redirect_to
        self.fail_navigation = fail_navigation
        self.hang_evaluation = hang_evaluation
        self.hang_fingerprint = hang_fingerprint


class FakeRenderer(PageRenderer):

    def __init__(self, site: "FakeSite"):
        self.site = site
        self.current: Optional[FakePage] = None
        self.current_url: Optional[str] = None

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        self.site.navigations.append(url)
        await asyncio.sleep(0)
        page = self.site.pages.get(normalize_url(url))
        if page is None or page.fail_navigation:
            raise RuntimeError(f"net::ERR_FAILED at {url}")
        final_url = page.redirect_to or url
        if page.redirect_to:
            page = self.site.pages.get(normalize_url(page.redirect_to), page)
        self.current, self.current_url = page, final_url
        return NavigationResult(final_url=final_url, http_status=200, load_time_ms=5)

    async def wait_for_selector(self, selector: str, timeout: float) -> bool:
        return selector in self.current.html

    async def title(self) -> str:
        return self.current.title

    async def extract_links(self) -> List[str]:
        return list(self.current.links)

    async def evaluate_accessibility(self, tags: List[str]) -> List[Violation]:
        self.site.evaluated_tags = list(tags)
        if self.current.hang_evaluation:
            await asyncio.sleep(3600)
        return [Violation.from_axe(v) for v in self.current.violations]

    async def evaluate_region_html(self) -> Dict[str, str]:
        if self.current.hang_fingerprint:
            await asyncio.sleep(3600)
        return extract_regions(self.current.html)


class FakeSession(BrowserSession):

    def __init__(self, site: "FakeSite", config: ScanConfig):
        self.site = site
        self.config = config
        self.closed = False

    @asynccontextmanager
    async def page(self):
        assert not self.closed, "page() after close()"
        self.site.active += 1
        self.site.peak_active = max(self.site.peak_active, self.site.active)
        try:
            yield FakeRenderer(self.site)
        finally:
            self.site.active -= 1

    async def close(self) -> None:
        self.closed = True


class FakeSite:
    """In-memory site keyed by normalized URL; also acts as the session factory."""

    def __init__(self):
        self.pages: Dict[str, FakePage] = {}
        self.sessions: List[FakeSession] = []
        self.navigations: List[str] = []
        self.evaluated_tags: List[str] = []
        self.active = 0
        self.peak_active = 0

    def add(self, url: str, **kwargs) -> FakePage:
        page = FakePage(**kwargs)
        self.pages[normalize_url(url)] = page
        return page

    def __call__(self, config: ScanConfig) -> FakeSession:
        # A phase must close its session before the next one opens
        assert all(s.closed for s in self.sessions), "browser session still open"
        session = FakeSession(self, config)
        self.sessions.append(session)
        return session


@pytest.fixture
def fake_site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def make_violation():
    return axe_violation


@pytest.fixture
def make_html():
    return page_html


@pytest.fixture
def fast_timings() -> dict:
    """ScanContext overrides that keep tests from sleeping."""
    return {"settle_delay": 0, "evaluation_timeout": 1.0, "fingerprint_timeout": 1.0, "navigation_timeout": 1.0}


# ── API ─────────────────────────────────────────


@pytest.fixture
def test_app(store):
    """FastAPI application bound to the per-test store; nothing is enqueued."""
    from app.features.scan.routes.scan import get_enqueue
    from app.main import create_app

    app = create_app()
    app.state.enqueued = []

    def enqueue(scan_id: str) -> str:
        app.state.enqueued.append(scan_id)
        return f"task-{scan_id}"

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_enqueue] = lambda: enqueue
    return app


@pytest_asyncio.fixture
async def api_client(test_app):
    """Async client talking to the app in-process, on the test's event loop."""
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(scope="function")
def client() -> Generator[TestClient, None, None]:
    """
    Create a test client for making HTTP requests.
    This fixture provides a clean TestClient instance for each test function,
    ensuring proper isolation between tests.
    """
    from app.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client
