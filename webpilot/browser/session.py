"""Browser session — attaches to a running Chromium over CDP via Playwright."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from webpilot.models.config import ViewportConfig

logger = logging.getLogger(__name__)


class PlaywrightTab:
    """One page in the shared context, identified by its CDP target id."""

    def __init__(self, page: Page, target_id: str):
        self.page = page
        self._target_id = target_id

    @property
    def target_id(self) -> str:
        return self._target_id

    def current_url(self) -> str:
        try:
            return self.page.url
        except Exception:
            return ""

    def is_closed(self) -> bool:
        return self.page.is_closed()

    async def close(self) -> None:
        if not self.page.is_closed():
            await self.page.close()


async def get_target_id(context: BrowserContext, page: Page) -> str:
    """Ask CDP for the target id of a page."""
    cdp = await context.new_cdp_session(page)
    try:
        info = await cdp.send("Target.getTargetInfo")
    finally:
        try:
            await cdp.detach()
        except Exception as e:
            logger.debug("Detaching CDP session failed: %s", e)
    return info["targetInfo"]["targetId"]


class PlaywrightBrowserSession:
    """Shared browser context in which every run opens its own tab."""

    def __init__(
        self,
        browser: Browser,
        context: BrowserContext,
        playwright: Optional[Playwright] = None,
    ):
        self.browser = browser
        self.context = context
        self._playwright = playwright
        self._tabs: list[PlaywrightTab] = []

    async def new_tab(self) -> PlaywrightTab:
        page = await self.context.new_page()
        target_id = await get_target_id(self.context, page)
        tab = PlaywrightTab(page, target_id)
        self._tabs.append(tab)
        return tab

    def tabs(self) -> list[PlaywrightTab]:
        self._tabs = [t for t in self._tabs if not t.is_closed()]
        return list(self._tabs)

    async def close_all_tabs(self) -> None:
        """Close every open page in the context, not only the ones we opened."""
        pages = [p for p in self.context.pages if not p.is_closed()]
        results = await asyncio.gather(*(p.close() for p in pages), return_exceptions=True)
        for page, result in zip(pages, results):
            if isinstance(result, Exception):
                logger.warning("Closing tab %s failed: %s", page.url, result)
        self._tabs.clear()
        logger.debug("Closed %d browser tabs", len(pages))

    async def close(self) -> None:
        try:
            await self.browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


class PlaywrightBrowserProvider:
    """Connects to an already running Chrome started with --remote-debugging-port."""

    def __init__(self, viewport: ViewportConfig | None = None, settle_seconds: float = 0.5):
        self.viewport = viewport or ViewportConfig()
        self.settle_seconds = settle_seconds

    async def connect(self, endpoint: str) -> PlaywrightBrowserSession:
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.connect_over_cdp(endpoint)
            contexts = browser.contexts
            if contexts:
                context = contexts[0]
                logger.debug("Reusing browser context with %d tabs", len(context.pages))
            else:
                context = await browser.new_context(
                    viewport={"width": self.viewport.width, "height": self.viewport.height},
                    device_scale_factor=1,
                )
                logger.debug("Created new browser context")
        except Exception:
            await playwright.stop()
            raise

        if self.settle_seconds:
            await asyncio.sleep(self.settle_seconds)
        return PlaywrightBrowserSession(browser, context, playwright)
