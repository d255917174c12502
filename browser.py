# browser.py
"""
Headless Chromium driver.

BrowserService owns one Playwright browser for the life of the app
(start/stop). Every caller gets a fresh context with the stealth patches and
resource blocking applied, and that context is always closed on the way out.
The browser is the slowest way to fetch anything here, so the scraper only
reaches for it after the HTTP transports have failed.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config import Settings
from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

BASE_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--disable-gpu",
    "--disable-background-networking",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-infobars",
    "--disable-notifications",
    "--disable-sync",
    "--disable-translate",
    "--no-first-run",
    "--no-zygote",
]

# Reduced footprint for serverless platforms
SERVERLESS_ARGS = [
    "--single-process",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--disable-hang-monitor",
    "--disable-domain-reliability",
    "--memory-pressure-off",
]

MINIMAL_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };
if (window.navigator.permissions && window.navigator.permissions.query) {
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) =>
        parameters.name === 'notifications'
            ? Promise.resolve({ state: Notification.permission })
            : originalQuery(parameters);
}
"""

BLOCKED_RESOURCES = {"image", "font", "media"}

# Evaluated in the page with {markers, selectors}; true while an anti-bot page is showing
CHALLENGE_CHECK = """
({ markers, selectors }) => {
    const text = (document.body ? document.body.textContent : '').toLowerCase();
    const title = (document.title || '').toLowerCase();
    if (window.location.href.includes('cdn-cgi/challenge')) return true;
    if (title.includes('please wait')) return true;
    if (markers.some((m) => text.includes(m) || title.includes(m))) return true;
    return selectors.some((s) => {
        try {
            const el = document.querySelector(s);
            return !!el && !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
        } catch (e) {
            return false;
        }
    });
}
"""

CHALLENGE_CLEARED = f"(args) => !({CHALLENGE_CHECK})(args)"

JSON_READY = "() => { const t = document.body ? document.body.textContent : ''; return t.includes('{') && t.includes('}'); }"


class BrowserService:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    @property
    def launch_args(self) -> List[str]:
        args = BASE_ARGS + (SERVERLESS_ARGS if self.settings.is_serverless else [])
        return args + [f"--user-agent={self.settings.user_agent}"]

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def start(self) -> Browser:
        async with self._lock:
            if self.is_running:
                return self._browser
            timeout = (30000 if self.settings.is_serverless else 60000)
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                try:
                    self._browser = await self._playwright.chromium.launch(
                        headless=True, args=self.launch_args, timeout=timeout
                    )
                except PlaywrightError as e:
                    logger.error(f"Failed to launch browser: {e}")
                    logger.info("Attempting fallback launch with minimal configuration...")
                    self._browser = await self._playwright.chromium.launch(headless=True, args=MINIMAL_ARGS)
            except PlaywrightError as e:
                logger.error(f"Fallback browser launch failed: {e}")
                raise UpstreamUnavailable("Browser unavailable")
            logger.info(f"Browser launched with {len(self.launch_args)} arguments")
            return self._browser

    async def stop(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except PlaywrightError as e:
                    logger.error(f"Error closing browser: {e}")
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    @asynccontextmanager
    async def page_session(self, referer: Optional[str] = None) -> AsyncIterator[Page]:
        """Yield a stealth-patched page in a fresh context; the context is always closed."""
        browser = await self.start()
        options: Dict[str, Any] = {
            "user_agent": self.settings.user_agent,
            "viewport": {"width": 1920, "height": 1080},
            "ignore_https_errors": True,
            "bypass_csp": True,
            "java_script_enabled": True,
            "extra_http_headers": {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
                "Cache-Control": "no-cache",
                "Referer": referer or self.settings.get_url("home"),
            },
        }
        proxy = self.settings.get_random_proxy()
        if proxy:
            options["proxy"] = {"server": proxy}

        try:
            context = await browser.new_context(**options)
        except PlaywrightError as e:
            logger.error(f"Failed to open browser context: {e}")
            raise UpstreamUnavailable("Browser unavailable")
        try:
            await context.add_init_script(STEALTH_SCRIPT)
            await context.route("**/*", _block_heavy_resources)
            page = await context.new_page()
            yield page
        except PlaywrightError as e:
            logger.error(f"Browser page error: {e}")
            raise UpstreamUnavailable(f"Browser error: {e.message}")
        finally:
            try:
                await context.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser context: {e}")

    async def has_challenge(self, page: Page) -> bool:
        return await page.evaluate(CHALLENGE_CHECK, self._challenge_args())

    async def wait_for_challenge(self, page: Page, timeout: Optional[float] = None) -> bool:
        """
        Wait for an anti-bot interstitial to clear.

        Returns True when no challenge is showing (anymore). A timeout is not an
        error: it returns False and the caller inspects whatever content is there.
        """
        timeout = timeout if timeout is not None else self.settings.challenge_timeout
        try:
            if not await self.has_challenge(page):
                return True
        except PlaywrightError as e:
            logger.warning(f"Challenge check failed ({e.message}) - proceeding anyway")
            return False
        logger.info("Challenge detected, waiting for resolution...")
        try:
            await page.wait_for_function(CHALLENGE_CLEARED, arg=self._challenge_args(), timeout=timeout * 1000)
            logger.info("Challenge resolved")
            return True
        except PlaywrightTimeoutError:
            logger.warning("Challenge resolution timeout - proceeding anyway")
            return False
        except PlaywrightError as e:
            logger.warning(f"Challenge wait failed ({e.message}) - proceeding anyway")
            return False

    async def fetch_rendered_html(
        self, url: str, wait: str = "dom", selector: Optional[str] = None, referer: Optional[str] = None
    ) -> str:
        """Render a page and return its HTML. wait is 'dom' or 'json'."""
        async with self.page_session(referer=referer) as page:
            await self._goto(page, url)
            await self.wait_for_challenge(page)
            bounded = self.settings.challenge_timeout * 1000
            try:
                if wait == "json":
                    await page.wait_for_function(JSON_READY, timeout=bounded)
                elif selector:
                    await page.wait_for_selector(selector, timeout=bounded)
            except PlaywrightTimeoutError:
                logger.info(f"Wait condition not met for {url}, continuing...")
            return await page.content()

    async def fetch_embed(self, url: str, referer: Optional[str] = None) -> Tuple[str, List[Dict[str, str]]]:
        """Render an embed page; also return the cookies the browser collected."""
        async with self.page_session(referer=referer) as page:
            response = await self._goto(page, url)
            if response is not None and response.status >= 400:
                raise UpstreamUnavailable(f"HTTP {response.status} error for {url}")
            await self.wait_for_challenge(page)
            html = await page.content()
            cookies = await page.context.cookies()
            return html, [_cookie_dict(cookie) for cookie in cookies]

    async def harvest_cookies(self, home_url: str) -> List[Dict[str, str]]:
        """Load the home page, let the DDoS-Guard check finish, return all cookies."""
        async with self.page_session() as page:
            logger.info(f"Navigating to {home_url} for cookie refresh...")
            await self._goto(page, home_url)
            await page.wait_for_timeout(2000)
            await self.wait_for_challenge(page)
            cookies = await page.context.cookies()
            return [_cookie_dict(cookie) for cookie in cookies]

    async def _goto(self, page: Page, url: str):
        try:
            return await page.goto(
                url, wait_until="domcontentloaded", timeout=self.settings.navigation_timeout * 1000
            )
        except PlaywrightTimeoutError:
            logger.error(f"Navigation timeout for {url}")
            raise UpstreamUnavailable(f"Navigation timeout: {url}")
        except PlaywrightError as e:
            logger.error(f"Navigation failed for {url}: {e}")
            raise UpstreamUnavailable(f"Navigation failed: {url}")

    def _challenge_args(self) -> Dict[str, List[str]]:
        return {
            "markers": [marker.lower() for marker in self.settings.challenge_markers],
            "selectors": list(self.settings.challenge_selectors),
        }


async def _block_heavy_resources(route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCES:
        await route.abort()
    else:
        await route.continue_()


def _cookie_dict(cookie: Dict[str, Any]) -> Dict[str, str]:
    return {
        "name": cookie.get("name", ""),
        "value": cookie.get("value", ""),
        "domain": cookie.get("domain", ""),
    }
