"""Drives a browser page against a sandbox endpoint and extracts a frame."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import CaptureConfig
from ..errors import (
    AuthenticationTimeout,
    CaptureError,
    CaptureTimeout,
    NavigationFailed,
    NavigationTimeout,
    PermissionDenied,
    TrustDialogUnresolved,
)
from ..models import RawFrame, SourceKind
from . import content
from .desktop import STATE_SCRIPT, decode_data_url, desktop_page_html, is_permission_error
from .detectors import TRUST_PHRASE, DetectorChain

logger = logging.getLogger("proctorbox.capture")

PASSWORD_INPUT = 'input[type="password"]'
WORKBENCH = ".monaco-workbench"
SAVE_DIALOG_INPUT = ".quick-input-widget input, .monaco-inputbox input"
TRUST_DIALOG = '.monaco-dialog-box, [role="dialog"]'
TRUST_PROMPT = re.compile(TRUST_PHRASE, re.IGNORECASE)
# the dialog renders right after the workbench when the folder is untrusted
TRUST_DIALOG_GRACE_SECONDS = 3.0


@dataclass
class DriveReport:
    """What happened while preparing the page. Only informative."""
    authenticated: bool = False
    trust_detector: Optional[str] = None
    verdict: content.ContentVerdict = content.NO_CONTENT
    opened_file: Optional[str] = None
    created_placeholder: bool = False
    warnings: List[str] = field(default_factory=list)

    def warn(self, error: CaptureError) -> None:
        self.warnings.append(f"{error.category.value}: {error}")


class CaptureDriver:
    def __init__(self, config: CaptureConfig, detectors: Optional[DetectorChain] = None):
        self.config = config
        self.detectors = detectors or DetectorChain(
            attempts=config.trust_attempts,
            retry_delay=config.settle_delay,
        )

    async def drive(
        self,
        page: Page,
        endpoint: str,
        credential: Optional[str] = None,
        subject_label: str = "",
        owner_hints: tuple[str, ...] = ("student",),
        report: Optional[DriveReport] = None,
    ) -> RawFrame:
        """Navigate, authenticate, dismiss dialogs, verify content, capture."""
        report = report if report is not None else DriveReport()
        url = endpoint if endpoint.startswith(("http://", "https://")) else f"http://{endpoint}"

        await self._navigate(page, url)
        report.authenticated = await self._authenticate(page, credential)
        await self._accept_trust(page, report)
        await self._dismiss_overlays(page, report)
        report.verdict = await self._verify_content(page, subject_label, owner_hints, report)
        await self._focus_editor(page)
        await asyncio.sleep(self.config.settle_delay)
        return await self.capture_frame(page)

    async def _navigate(self, page: Page, url: str) -> None:
        logger.debug(f"Navigating to {url}")
        try:
            await page.goto(url, wait_until="load", timeout=self.config.navigation_timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(
                f"Navigation to {url} timed out after {self.config.navigation_timeout:g}s"
            ) from e
        except PlaywrightError as e:
            raise NavigationFailed(f"Navigation to {url} failed: {e.message}") from e

    async def _authenticate(self, page: Page, credential: Optional[str]) -> bool:
        password = page.locator(PASSWORD_INPUT)
        if await password.count() == 0:
            return False
        if not credential:
            raise AuthenticationTimeout("Sandbox asked for a password but no credential is configured")

        logger.debug("Credential prompt detected, signing in")
        try:
            await password.first.fill(credential)
            await password.first.press("Enter")
            await page.wait_for_selector(WORKBENCH, timeout=self.config.auth_timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise AuthenticationTimeout(
                f"Editor not ready {self.config.auth_timeout:g}s after sign-in"
            ) from e
        return True

    async def _accept_trust(self, page: Page, report: DriveReport) -> None:
        try:
            await page.wait_for_selector(WORKBENCH, timeout=self.config.trust_dialog_timeout * 1000)
        except PlaywrightTimeoutError:
            logger.debug("Workbench not rendered, skipping trust dialog")
            return

        grace = min(self.config.trust_dialog_timeout, TRUST_DIALOG_GRACE_SECONDS)
        dialog = page.locator(TRUST_DIALOG, has_text=TRUST_PROMPT)
        try:
            await dialog.first.wait_for(state="visible", timeout=grace * 1000)
        except PlaywrightTimeoutError:
            logger.debug("No trust dialog shown, workspace already trusted")
            return

        report.trust_detector = await self.detectors.dismiss(page)
        if report.trust_detector is None:
            error = TrustDialogUnresolved("Trust dialog not found or not dismissed")
            logger.warning(str(error))
            report.warn(error)
        else:
            await asyncio.sleep(self.config.settle_delay)

    async def _dismiss_overlays(self, page: Page, report: DriveReport) -> None:
        try:
            closed = await page.evaluate(content.DISMISS_OVERLAYS_SCRIPT)
        except PlaywrightError as e:
            report.warnings.append(f"overlays: {e.message}")
            return
        if closed:
            logger.debug(f"Closed {closed} toast(s) and welcome tab(s)")

    async def _snapshot(self, page: Page) -> dict[str, Any]:
        return await page.evaluate(content.SNAPSHOT_SCRIPT)

    async def _verify_content(
        self,
        page: Page,
        subject_label: str,
        owner_hints: tuple[str, ...],
        report: DriveReport,
    ) -> content.ContentVerdict:
        """Bounded passes; a negative verdict means capture whatever is rendered."""
        verdict = content.NO_CONTENT
        for attempt in range(1, self.config.verification_passes + 1):
            try:
                snapshot = await asyncio.wait_for(
                    self._snapshot(page), timeout=self.config.verification_timeout
                )
            except (asyncio.TimeoutError, PlaywrightError) as e:
                report.warnings.append(f"verification pass {attempt}: {e}")
                continue

            verdict = content.classify_snapshot(snapshot)
            if verdict.has_code:
                logger.debug(f"Content detected ({verdict.kind}) on pass {attempt}")
                return verdict

            if content.needs_file(snapshot):
                try:
                    await asyncio.wait_for(
                        self._open_something(page, subject_label, owner_hints, report),
                        timeout=self.config.verification_timeout,
                    )
                except (asyncio.TimeoutError, PlaywrightError) as e:
                    report.warnings.append(f"open file on pass {attempt}: {e}")
            await asyncio.sleep(self.config.settle_delay)

        logger.info(f"No code visible after {self.config.verification_passes} passes, capturing anyway")
        return verdict

    async def _open_something(
        self,
        page: Page,
        subject_label: str,
        owner_hints: tuple[str, ...],
        report: DriveReport,
    ) -> None:
        if report.opened_file is None and not report.created_placeholder:
            files = await page.evaluate(content.EXPLORER_FILES_SCRIPT)
            target = content.pick_target_file(files, owner_hints)
            if target:
                row = page.locator(".explorer-viewlet .label-name", has_text=target).first
                await row.dblclick(timeout=self.config.verification_timeout * 1000)
                report.opened_file = target
                logger.debug(f"Opened existing file {target}")
                return

        if not report.created_placeholder:
            await self._create_placeholder(page, subject_label)
            report.created_placeholder = True

    async def _create_placeholder(self, page: Page, subject_label: str) -> None:
        filename = content.placeholder_filename(subject_label)
        logger.debug(f"No file open, creating {filename}")
        await page.keyboard.press("Control+N")
        await asyncio.sleep(self.config.settle_delay)
        await page.keyboard.insert_text(content.placeholder_source(subject_label))
        await page.keyboard.press("Control+S")
        dialog = page.locator(SAVE_DIALOG_INPUT).first
        await dialog.wait_for(timeout=self.config.verification_timeout * 1000)
        await dialog.fill(filename)
        await dialog.press("Enter")

    async def _focus_editor(self, page: Page) -> None:
        try:
            await page.evaluate(content.FOCUS_EDITOR_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"Could not focus editor: {e.message}")

    async def capture_frame(self, page: Page) -> RawFrame:
        """Full-surface JPEG of the current viewport."""
        try:
            data = await page.screenshot(
                type="jpeg",
                quality=self.config.jpeg_quality,
                timeout=self.config.verification_timeout * 1000,
            )
        except PlaywrightTimeoutError as e:
            raise CaptureTimeout("Screenshot timed out") from e
        except PlaywrightError as e:
            raise CaptureError(f"Screenshot failed: {e.message}") from e

        viewport = page.viewport_size or {
            "width": self.config.viewport_width,
            "height": self.config.viewport_height,
        }
        return RawFrame(
            data=data,
            width=viewport["width"],
            height=viewport["height"],
            source_kind=SourceKind.SANDBOX_FRAME,
        )

    async def capture_desktop(self, page: Page, owner_id: str) -> RawFrame:
        """Sample one frame of a display-sharing stream.

        A refused permission fails immediately; otherwise the page is polled up
        to ``desktop_attempts`` times before giving up.
        """
        await page.set_content(desktop_page_html(self.config.jpeg_quality / 100))

        for attempt in range(1, self.config.desktop_attempts + 1):
            state = await page.evaluate(STATE_SCRIPT)
            error = state.get("error")
            if error:
                if is_permission_error(error):
                    raise PermissionDenied(f"Screen sharing refused for {owner_id}: {error}")
                raise CaptureError(f"Display capture failed for {owner_id}: {error}")

            image = state.get("image")
            if image:
                try:
                    mime, data = decode_data_url(image)
                except ValueError as e:
                    raise CaptureError(f"Display capture returned bad data: {e}") from e
                logger.debug(f"[{owner_id}] Desktop frame ready after {attempt} poll(s)")
                return RawFrame(
                    data=data,
                    width=int(state.get("width") or 0),
                    height=int(state.get("height") or 0),
                    mime_type=mime,
                    source_kind=SourceKind.FULL_DESKTOP,
                )
            await asyncio.sleep(self.config.desktop_poll_interval)

        raise CaptureTimeout(
            f"No desktop frame for {owner_id} after {self.config.desktop_attempts} attempts"
        )
