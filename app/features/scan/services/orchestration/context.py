"""
Per-scan state passed explicitly into each phase.

Two scans never share a context, so they can run side by side in one
process without seeing each other's visited set or cancel flag.
"""
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

from app.features.scan.schemas.scan import ScanConfig
from app.features.scan.services.discovery.url_utils import normalize_url
from app.platform.config import settings

CancelCheck = Callable[[], Awaitable[bool]]


class ScanContext:

    def __init__(
        self,
        scan_id: str,
        root_url: str,
        config: ScanConfig,
        cancel_check: Optional[CancelCheck] = None,
        navigation_timeout: Optional[float] = None,
        settle_delay: Optional[float] = None,
        evaluation_timeout: Optional[float] = None,
        fingerprint_timeout: Optional[float] = None,
        wait_for_selector_timeout: Optional[float] = None,
    ):
        self.scan_id = scan_id
        self.root_url = normalize_url(root_url)
        self.config = config
        self._cancel_check = cancel_check

        self.navigation_timeout = _pick(navigation_timeout, settings.NAVIGATION_TIMEOUT_SECONDS)
        self.settle_delay = _pick(settle_delay, settings.SETTLE_DELAY_SECONDS)
        self.evaluation_timeout = _pick(evaluation_timeout, settings.EVALUATION_TIMEOUT_SECONDS)
        self.fingerprint_timeout = _pick(fingerprint_timeout, settings.FINGERPRINT_TIMEOUT_SECONDS)
        self.wait_for_selector_timeout = _pick(
            wait_for_selector_timeout, settings.WAIT_FOR_SELECTOR_TIMEOUT_SECONDS
        )

        # Crawl state, keyed by normalized URL
        self.queue: Deque[Tuple[str, int]] = deque()
        self.visited: Set[str] = set()
        self.queued: Set[str] = set()
        self.pattern_counts: Dict[str, int] = {}
        self.pages_recorded = 0

        self.cancelled = False

    async def is_cancelled(self) -> bool:
        """Sticky: once a cancel is observed every later check says so."""
        if not self.cancelled and self._cancel_check is not None:
            self.cancelled = bool(await self._cancel_check())
        return self.cancelled

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def remaining_budget(self) -> int:
        return max(0, self.config.max_pages - self.pages_recorded)


def _pick(value: Optional[float], default: float) -> float:
    return default if value is None else value
