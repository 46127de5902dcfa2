"""Workspace-trust dialog detectors.

The editor asks whether the workspace authors are trusted. The button is
found by an ordered chain of interchangeable strategies; the first one that
locates a button wins.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

logger = logging.getLogger("proctorbox.capture")

TRUST_PHRASE = "trust the authors"


class Detector(ABC):
    name: str = "detector"

    @abstractmethod
    async def locate(self, page: Page) -> Optional[Locator]:
        """Return a locator for the trust button, or None if not found."""


async def _first_match(locator: Locator) -> Optional[Locator]:
    if await locator.count() > 0:
        return locator.first
    return None


class AriaLabelDetector(Detector):
    name = "aria-label"

    async def locate(self, page: Page) -> Optional[Locator]:
        return await _first_match(page.locator('button[aria-label*="trust" i][aria-label*="authors" i]'))


class TextDetector(Detector):
    name = "text"

    async def locate(self, page: Page) -> Optional[Locator]:
        return await _first_match(page.get_by_role("button", name=re.compile(TRUST_PHRASE, re.IGNORECASE)))


class XPathDetector(Detector):
    name = "xpath"

    XPATH = (
        "//*[self::button or self::a][contains(translate(normalize-space(.),"
        "'ABCDEFGHIJKLMNOPQRSTUVWXYZ','abcdefghijklmnopqrstuvwxyz'),'" + TRUST_PHRASE + "')]"
    )

    async def locate(self, page: Page) -> Optional[Locator]:
        return await _first_match(page.locator(f"xpath={self.XPATH}"))


def default_detectors() -> list[Detector]:
    return [AriaLabelDetector(), TextDetector(), XPathDetector()]


class DetectorChain:
    """Tries each detector in order, for a bounded number of rounds."""

    def __init__(
        self,
        detectors: Optional[Sequence[Detector]] = None,
        attempts: int = 3,
        retry_delay: float = 1.0,
        click_timeout: float = 5.0,
    ):
        self.detectors = list(detectors) if detectors is not None else default_detectors()
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.click_timeout = click_timeout

    async def dismiss(self, page: Page) -> Optional[str]:
        """Click the trust button. Returns the winning detector's name, or None."""
        for attempt in range(1, self.attempts + 1):
            for detector in self.detectors:
                try:
                    button = await detector.locate(page)
                    if button is None:
                        continue
                    await button.click(timeout=self.click_timeout * 1000)
                except PlaywrightError as e:
                    logger.debug(f"Trust detector {detector.name} failed on attempt {attempt}: {e}")
                    continue
                logger.info(f"Workspace trust accepted via {detector.name}")
                return detector.name
            if attempt < self.attempts:
                await asyncio.sleep(self.retry_delay)
        return None
