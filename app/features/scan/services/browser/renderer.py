"""
Page renderer contract.

A BrowserSession is acquired once per pipeline phase and hands out isolated
pages (tabs) through `page()`. Implementations must release every browser
resource in `close()`.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List

from app.features.scan.schemas.findings import NavigationResult, Violation
from app.features.scan.schemas.scan import ScanConfig

WCAG_TAGS = ["wcag2a", "wcag2aa", "wcag21a", "wcag21aa"]


class PageRenderer(ABC):

    @abstractmethod
    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        """Load `url` and report the post-redirect URL."""

    @abstractmethod
    async def wait_for_selector(self, selector: str, timeout: float) -> bool:
        """Wait until `selector` matches; False on timeout."""

    @abstractmethod
    async def title(self) -> str:
        ...

    @abstractmethod
    async def extract_links(self) -> List[str]:
        """Absolute hrefs of every anchor on the page."""

    @abstractmethod
    async def evaluate_accessibility(self, tags: List[str]) -> List[Violation]:
        ...

    @abstractmethod
    async def evaluate_region_html(self) -> Dict[str, str]:
        """Region name -> raw outer HTML for the landmark regions present."""


class BrowserSession(ABC):

    @abstractmethod
    def page(self) -> "AsyncIterator[PageRenderer]":
        """Async context manager yielding a fresh page."""

    @abstractmethod
    async def close(self) -> None:
        ...

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


BrowserSessionFactory = Callable[[ScanConfig], BrowserSession]


