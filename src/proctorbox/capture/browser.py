"""Browser engine management for captures."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright

from ..config import CaptureConfig

logger = logging.getLogger("proctorbox.capture")

HEADLESS_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

DESKTOP_ARGS = [
    "--no-sandbox",
    "--use-fake-ui-for-media-stream",
    "--enable-usermedia-screen-capturing",
    "--allow-http-screen-capture",
    "--auto-select-desktop-capture-source=Entire screen",
]


class BrowserPool:
    """One shared headless engine for sandbox frames, fresh visible browsers for desktops.

    Every ``page()`` gets its own browser context, closed when the block exits,
    so no cookies or storage leak between owners.
    """

    def __init__(self, config: CaptureConfig):
        self.config = config
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    @property
    def launched(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _ensure_playwright(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return self._playwright

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if not self.launched:
                pw = await self._ensure_playwright()
                logger.info("Launching shared headless browser")
                self._browser = await pw.chromium.launch(headless=True, args=HEADLESS_ARGS)
            return self._browser

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Page]:
        browser = await self._ensure_browser()
        context = await browser.new_context(
            viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
            ignore_https_errors=True,
        )
        try:
            page = await context.new_page()
            page.set_default_timeout(self.config.verification_timeout * 1000)
            yield page
        finally:
            await context.close()

    @asynccontextmanager
    async def desktop_page(self) -> AsyncIterator[Page]:
        async with self._lock:
            pw = await self._ensure_playwright()
        logger.info("Launching visible browser for desktop capture")
        browser = await pw.chromium.launch(headless=False, args=DESKTOP_ARGS)
        try:
            context = await browser.new_context(
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
            )
            yield await context.new_page()
        finally:
            await browser.close()

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Browser engine closed")
