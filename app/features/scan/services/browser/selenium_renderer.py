"""
Selenium implementation of the page renderer.

Each session keeps a pool of at most `concurrency` headless Chrome drivers.
WebDriver calls are blocking, so every call runs in a worker thread. A driver
whose page operation raised (navigation failure, timeout) is quit and
replaced instead of going back to the pool, since a timed-out command may
still be running inside it.
"""
import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from app.features.scan.schemas.findings import NavigationResult, Violation
from app.features.scan.schemas.scan import ScanConfig
from app.features.scan.services.browser.renderer import BrowserSession, PageRenderer
from app.features.scan.services.fingerprint.fingerprint import extract_regions
from app.platform.config import settings
from app.platform.exceptions import BrowserUnavailableError
from app.platform.logger import get_logger

logger = get_logger(__name__)

_NAVIGATION_STATUS_JS = """
const entry = performance.getEntriesByType('navigation')[0];
return entry && entry.responseStatus ? entry.responseStatus : null;
"""

_LINKS_JS = """
return Array.from(document.querySelectorAll('a[href]'))
  .map(a => a.href)
  .filter(Boolean);
"""

_AXE_RUN_JS = """
const tags = arguments[0];
const done = arguments[arguments.length - 1];
if (!window.axe) { done({error: 'axe not injected'}); return; }
window.axe.run(document, {runOnly: {type: 'tag', values: tags}})
  .then(results => done({violations: results.violations}))
  .catch(err => done({error: String(err)}));
"""


def build_driver(config: ScanConfig) -> webdriver.Chrome:
    chrome_options = Options()
    if settings.BROWSER_HEADLESS:
        chrome_options.add_argument('--headless=new')
    chrome_options.add_argument('--no-sandbox')
    chrome_options.add_argument('--disable-dev-shm-usage')
    chrome_options.add_argument(f'--window-size={config.viewport.width},{config.viewport.height}')
    chrome_options.add_argument(f'--user-agent={settings.BROWSER_USER_AGENT}')

    if settings.CHROMEDRIVER_PATH:
        driver_service = Service(executable_path=settings.CHROMEDRIVER_PATH)
        driver = webdriver.Chrome(service=driver_service, options=chrome_options)
    else:
        driver = webdriver.Chrome(options=chrome_options)

    return driver


def _quit(driver) -> None:
    try:
        driver.quit()
    except WebDriverException as e:
        logger.warning(f"Failed to quit driver cleanly: {e}")


class SeleniumPage(PageRenderer):

    def __init__(self, driver, axe_source: Callable[[], str]):
        self.driver = driver
        self._axe_source = axe_source

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        def _go() -> NavigationResult:
            self.driver.set_page_load_timeout(timeout)
            start_time = time.time()
            self.driver.get(url)
            load_time_ms = int((time.time() - start_time) * 1000)
            http_status = self.driver.execute_script(_NAVIGATION_STATUS_JS)
            return NavigationResult(
                final_url=self.driver.current_url,
                http_status=http_status,
                load_time_ms=load_time_ms,
            )

        return await asyncio.to_thread(_go)

    async def wait_for_selector(self, selector: str, timeout: float) -> bool:
        def _wait() -> bool:
            try:
                WebDriverWait(self.driver, timeout).until(
                    EC.presence_of_element_located((By.CSS_SELECTOR, selector))
                )
                return True
            except TimeoutException:
                return False

        return await asyncio.to_thread(_wait)

    async def title(self) -> str:
        return await asyncio.to_thread(lambda: self.driver.title or "")

    async def extract_links(self) -> List[str]:
        links = await asyncio.to_thread(self.driver.execute_script, _LINKS_JS)
        return list(links or [])

    async def evaluate_accessibility(self, tags: List[str]) -> List[Violation]:
        def _run() -> dict:
            if not self.driver.execute_script("return !!window.axe;"):
                self.driver.execute_script(self._axe_source())
            # The caller enforces the real deadline; keep the driver's own limit above it.
            self.driver.set_script_timeout(settings.EVALUATION_TIMEOUT_SECONDS + 5)
            return self.driver.execute_async_script(_AXE_RUN_JS, tags)

        result = await asyncio.to_thread(_run) or {}
        if result.get("error"):
            raise RuntimeError(f"axe.run failed: {result['error']}")
        return [Violation.from_axe(v) for v in result.get("violations", [])]

    async def evaluate_region_html(self) -> Dict[str, str]:
        page_source = await asyncio.to_thread(lambda: self.driver.page_source)
        return extract_regions(page_source)


class SeleniumBrowserSession(BrowserSession):

    def __init__(self, config: ScanConfig, driver_factory: Optional[Callable[[ScanConfig], object]] = None):
        self.config = config
        self._driver_factory = driver_factory or build_driver
        self._slots = asyncio.Semaphore(config.concurrency)
        self._idle: List[object] = []
        self._drivers: List[object] = []
        self._axe_js: Optional[str] = None
        self._closed = False

    def _load_axe(self) -> str:
        if self._axe_js is None:
            path = settings.AXE_SCRIPT_PATH
            if not path or not os.path.exists(path):
                raise BrowserUnavailableError(f"AXE_SCRIPT_PATH is not set or invalid: {path!r}")
            with open(path, "r", encoding="utf-8") as f:
                self._axe_js = f.read()
        return self._axe_js

    async def _acquire_driver(self):
        if self._idle:
            return self._idle.pop()
        try:
            driver = await asyncio.to_thread(self._driver_factory, self.config)
        except WebDriverException as e:
            raise BrowserUnavailableError(f"Could not start Chrome: {e}") from e
        self._drivers.append(driver)
        logger.info(f"Started browser driver ({len(self._drivers)} active)")
        return driver

    def _discard(self, driver) -> None:
        if driver in self._drivers:
            self._drivers.remove(driver)
        # Not awaited: a timed-out command may still hold the driver
        asyncio.get_running_loop().run_in_executor(None, _quit, driver)

    @asynccontextmanager
    async def page(self) -> AsyncIterator[PageRenderer]:
        if self._closed:
            raise BrowserUnavailableError("Browser session already closed")

        async with self._slots:
            driver = await self._acquire_driver()
            healthy = False
            try:
                yield SeleniumPage(driver, self._load_axe)
                healthy = True
            finally:
                if healthy and not self._closed:
                    self._idle.append(driver)
                else:
                    self._discard(driver)

    async def close(self) -> None:
        self._closed = True
        drivers, self._drivers, self._idle = self._drivers, [], []
        for driver in drivers:
            await asyncio.to_thread(_quit, driver)
        logger.info(f"Browser session closed ({len(drivers)} drivers)")
