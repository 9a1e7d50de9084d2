"""
Crawl Coordinator

Breadth-first discovery of same-origin pages, `concurrency` pages at a time.
Each batch is written to the store in one transaction before any event about
it goes out.
"""
import asyncio
from typing import List, Optional, Tuple

from app.features.scan.schemas.findings import CrawledPage
from app.features.scan.services import events as ev
from app.features.scan.services.browser.renderer import BrowserSession
from app.features.scan.services.discovery.url_utils import (
    get_url_pattern,
    is_same_origin,
    normalize_url,
    resolve_url,
    should_skip_url,
)
from app.features.scan.services.orchestration.context import ScanContext
from app.features.scan.services.scanning.deadline import with_deadline, with_fallback
from app.features.scan.services.store import ScanStore
from app.platform.exceptions import BrowserUnavailableError
from app.platform.logger import get_logger

logger = get_logger(__name__)


async def crawl(ctx: ScanContext, session: BrowserSession, store: ScanStore, events: ev.EventSink) -> List[str]:
    """
    Discover pages starting at the context's root URL.

    Returns the normalized URLs recorded as Pages, in discovery order.
    Stops on an empty queue, an exhausted page budget, or cancellation.
    """
    recorded: List[str] = []
    _enqueue(ctx, ctx.root_url, 0)

    logger.info(
        f"[{ctx.scan_id}] Crawl started at {ctx.root_url} "
        f"(max_pages={ctx.config.max_pages}, max_depth={ctx.config.max_depth})"
    )

    while ctx.queue and ctx.remaining_budget > 0:
        if await ctx.is_cancelled():
            logger.info(f"[{ctx.scan_id}] Crawl halted: cancellation requested")
            break

        batch = _next_batch(ctx)
        if not batch:
            break

        visits = await asyncio.gather(*[_visit(ctx, session, url, depth) for url, depth in batch])

        accepted: List[CrawledPage] = []
        for requested, page in visits:
            if not _accept(ctx, requested, page):
                continue
            accepted.append(page)
            ctx.pages_recorded += 1
            if page.ok:
                _enqueue_links(ctx, page)

        await store.add_crawled_pages(ctx.scan_id, accepted)
        recorded.extend(p.url for p in accepted)

        for page in accepted:
            await ev.emit(
                events,
                ev.CRAWL_PAGE_FOUND,
                ctx.scan_id,
                url=page.url,
                title=page.title,
                depth=page.depth,
                status="pending" if page.ok else "error",
                error=page.error,
            )
        await ev.emit(
            events,
            ev.CRAWL_PROGRESS,
            ctx.scan_id,
            pages_found=ctx.pages_recorded,
            queue_size=len(ctx.queue),
            max_pages=ctx.config.max_pages,
        )

        if ctx.queue and ctx.remaining_budget > 0 and ctx.config.delay_ms:
            await asyncio.sleep(ctx.config.delay_seconds)

    logger.info(f"[{ctx.scan_id}] Crawl finished: {len(recorded)} pages recorded")
    return recorded


def _enqueue(ctx: ScanContext, url: str, depth: int) -> None:
    ctx.queue.append((url, depth))
    ctx.queued.add(url)
    pattern = get_url_pattern(url)
    if pattern is not None:
        ctx.pattern_counts[pattern] = ctx.pattern_counts.get(pattern, 0) + 1


def _next_batch(ctx: ScanContext) -> List[Tuple[str, int]]:
    size = min(ctx.config.concurrency, ctx.remaining_budget)
    batch = []
    while ctx.queue and len(batch) < size:
        url, depth = ctx.queue.popleft()
        ctx.queued.discard(url)
        # A redirect may have landed on this URL after it was queued
        if url in ctx.visited:
            continue
        ctx.visited.add(url)
        batch.append((url, depth))
    return batch


async def _visit(ctx: ScanContext, session: BrowserSession, url: str, depth: int) -> Tuple[str, CrawledPage]:
    try:
        async with session.page() as page:
            nav = await with_deadline(
                page.navigate(url, ctx.navigation_timeout), ctx.navigation_timeout, f"navigation to {url}"
            )
            await asyncio.sleep(ctx.settle_delay)
            if ctx.config.wait_for_selector:
                await with_fallback(
                    page.wait_for_selector(ctx.config.wait_for_selector, ctx.wait_for_selector_timeout),
                    ctx.wait_for_selector_timeout,
                    False,
                    f"wait for {ctx.config.wait_for_selector!r}",
                )
            title = await page.title()
            links = await page.extract_links()
    except BrowserUnavailableError:
        raise
    except Exception as e:
        logger.warning(f"[{ctx.scan_id}] Failed to load {url}: {e}")
        return url, CrawledPage(url=url, depth=depth, error=str(e) or e.__class__.__name__)

    return url, CrawledPage(
        url=normalize_url(nav.final_url),
        depth=depth,
        title=title,
        http_status=nav.http_status,
        load_time_ms=nav.load_time_ms,
        links=links,
    )


def _accept(ctx: ScanContext, requested: str, page: CrawledPage) -> bool:
    """
    Drop navigations that redirected off-origin or onto an already visited URL.

    The root is always kept. When it redirects (http -> https, apex -> www)
    the crawl is rebased onto the final URL, whose origin every later link
    is checked against.
    """
    if not page.ok or page.url == requested:
        return True
    if page.depth == 0 and requested == ctx.root_url:
        logger.info(f"[{ctx.scan_id}] Root {requested} redirected to {page.url}, rebasing crawl")
        ctx.root_url = page.url
        ctx.visited.add(page.url)
        return True
    if not is_same_origin(page.url, ctx.root_url):
        logger.info(f"[{ctx.scan_id}] Discarding {requested}: redirected off-origin to {page.url}")
        return False
    if page.url in ctx.visited:
        logger.info(f"[{ctx.scan_id}] Discarding {requested}: redirected to visited {page.url}")
        return False
    ctx.visited.add(page.url)
    return True


def _enqueue_links(ctx: ScanContext, page: CrawledPage) -> None:
    if page.depth >= ctx.config.max_depth:
        return
    for href in page.links:
        url = _candidate(ctx, page.url, href)
        if url is not None:
            _enqueue(ctx, url, page.depth + 1)


def _candidate(ctx: ScanContext, base_url: str, href: str) -> Optional[str]:
    resolved = resolve_url(base_url, href)
    if resolved is None:
        return None
    url = normalize_url(resolved)
    if not is_same_origin(url, ctx.root_url):
        return None
    if should_skip_url(url, ctx.config.exclude_patterns):
        return None
    if url in ctx.visited or url in ctx.queued:
        return None
    pattern = get_url_pattern(url)
    if pattern is not None and ctx.pattern_counts.get(pattern, 0) >= ctx.config.max_pages_per_pattern:
        return None
    return url
