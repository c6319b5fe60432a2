"""
Screenshot adapter for the Pokify import service.

A single headless Chromium is launched lazily and shared; each capture gets
its own browser context, which is always closed when the capture ends.
"""
import asyncio
import base64
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from playwright.async_api import async_playwright

from pokify.utils.logger import LayerLogger


LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]

VIEWPORT = {"width": 1366, "height": 2000}
NAVIGATION_TIMEOUT_MS = 30000
SETTLE_BEFORE_SCROLL_SECONDS = 2.0
SETTLE_AFTER_SCROLL_SECONDS = 1.0
JPEG_QUALITY = 80
BLOCKED_RESOURCE_TYPES = ("media", "font")

# Scrolls 300px every 100ms until the page height is covered, then back to top
AUTO_SCROLL_SCRIPT = """
async () => {
    await new Promise((resolve) => {
        let totalHeight = 0;
        const distance = 300;
        const timer = setInterval(() => {
            const scrollHeight = document.body.scrollHeight;
            window.scrollBy(0, distance);
            totalHeight += distance;
            if (totalHeight >= scrollHeight) {
                clearInterval(timer);
                window.scrollTo(0, 0);
                resolve();
            }
        }, 100);
    });
}
"""

PAGE_DIMENSIONS_SCRIPT = """
() => ({
    width: document.documentElement.clientWidth,
    height: document.documentElement.scrollHeight,
    devicePixelRatio: window.devicePixelRatio,
})
"""

BrowserLauncher = Callable[[], Awaitable[Any]]


class BrowserPool:
    """
    Owns one shared browser and bounds concurrent contexts.

    Args:
        max_contexts: How many captures may hold a context at once
        launcher: Async factory returning a browser; defaults to Playwright Chromium
    """

    def __init__(self, max_contexts: int = 2, launcher: Optional[BrowserLauncher] = None):
        self.max_contexts = max_contexts
        self._launcher = launcher or self._launch_chromium
        self._semaphore = asyncio.Semaphore(max_contexts)
        self._lock = asyncio.Lock()
        self._playwright = None
        self._browser = None
        self.logger = LayerLogger("browser_pool")

    async def _launch_chromium(self):
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)

    async def get_browser(self):
        if self._browser is None:
            async with self._lock:
                if self._browser is None:
                    self.logger.log_action("launch_browser", "started", max_contexts=self.max_contexts)
                    self._browser = await self._launcher()
                    self.logger.log_action("launch_browser", "completed")
        return self._browser

    async def run(self, task: Callable[[Any], Awaitable[Any]], **context_options):
        """
        Run ``task(context)`` inside a fresh browser context.

        The context is closed on every exit path, including errors raised
        by the task itself.
        """
        async with self._semaphore:
            browser = await self.get_browser()
            context = await browser.new_context(**context_options)
            try:
                return await task(context)
            finally:
                await context.close()
                self.logger.log_action("browser_context", "closed")

    async def close(self):
        """Close the shared browser. Called at application shutdown."""
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        self.logger.log_action("browser_pool", "closed")


class CapturedScreenshot:
    """Base64 JPEG plus capture metadata."""

    def __init__(self, screenshot: str, meta: Dict[str, Any]):
        self.screenshot = screenshot
        self.meta = meta


class ScreenshotCapturer:
    """
    Full-page product screenshots for the vision extractor.
    Capture errors propagate; navigation errors are tolerated.
    """

    def __init__(
        self,
        pool: BrowserPool,
        settle_before: float = SETTLE_BEFORE_SCROLL_SECONDS,
        settle_after: float = SETTLE_AFTER_SCROLL_SECONDS,
    ):
        self.pool = pool
        self.settle_before = settle_before
        self.settle_after = settle_after
        self.logger = LayerLogger("screenshot")

    async def capture(self, url: str) -> str:
        """Capture ``url`` and return the screenshot as base64 JPEG."""
        captured = await self.capture_with_meta(url)
        return captured.screenshot

    async def capture_with_meta(self, url: str) -> CapturedScreenshot:
        self.logger.log_action("capture_screenshot", "started", url=url)
        start = time.monotonic()

        captured = await self.pool.run(
            lambda context: self._capture_in_context(context, url),
            viewport=VIEWPORT,
        )

        captured.meta["total_time_ms"] = int((time.monotonic() - start) * 1000)
        self.logger.log_action(
            "capture_screenshot",
            "completed",
            url=url,
            size=len(captured.screenshot),
            duration_ms=captured.meta["total_time_ms"],
        )
        return captured

    async def _capture_in_context(self, context, url: str) -> CapturedScreenshot:
        page = await context.new_page()
        await page.route("**/*", self._block_heavy_resources)

        navigation_start = time.monotonic()
        try:
            await page.goto(url, timeout=NAVIGATION_TIMEOUT_MS, wait_until="networkidle")
        except Exception as e:
            # Slow pages usually time out on networkidle but are still renderable
            self.logger.log_warning(f"Navigation problem: {str(e)}", url=url)
        navigation_ms = int((time.monotonic() - navigation_start) * 1000)

        await asyncio.sleep(self.settle_before)
        await page.evaluate(AUTO_SCROLL_SCRIPT)
        await asyncio.sleep(self.settle_after)

        dimensions = await page.evaluate(PAGE_DIMENSIONS_SCRIPT)

        capture_start = time.monotonic()
        image = await page.screenshot(full_page=True, type="jpeg", quality=JPEG_QUALITY)
        capture_ms = int((time.monotonic() - capture_start) * 1000)

        return CapturedScreenshot(
            screenshot=base64.b64encode(image).decode("ascii"),
            meta={
                "url": url,
                "dimensions": dimensions,
                "navigation_time_ms": navigation_ms,
                "capture_time_ms": capture_ms,
                "size_bytes": len(image),
            },
        )

    @staticmethod
    async def _block_heavy_resources(route):
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()
