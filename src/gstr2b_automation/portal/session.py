from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from playwright.sync_api import Browser, BrowserContext, Page, sync_playwright


logger = logging.getLogger(__name__)


class BrowserLaunchError(RuntimeError):
    """
    Raised when no browser could be started. Nothing else is attempted after this.
    """


@dataclass
class PortalSession:
    browser: Browser
    context: BrowserContext
    page: Page


def _launch(pw: Any, *, headless: bool, slow_mo_ms: int) -> Browser:
    # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
    # cache doesn't have Playwright browsers available.
    launch_kwargs = {
        "headless": headless,
        "slow_mo": int(slow_mo_ms or 0),
        "args": ["--no-sandbox", "--disable-setuid-sandbox"],
    }
    try:
        return pw.chromium.launch(**launch_kwargs)
    except Exception as e:
        msg = str(e)
        if "Executable doesn't exist" not in msg:
            raise

        logger.warning(
            "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
            msg,
        )
        try:
            return pw.chromium.launch(channel="chrome", **launch_kwargs)
        except Exception:
            return pw.chromium.launch(channel="msedge", **launch_kwargs)


@contextmanager
def browser_session(*, headless: bool = True, slow_mo_ms: int = 0) -> Iterator[PortalSession]:
    """
    One browser + context + page for one request. Released on every exit path, including
    exceptions raised inside the `with` block.
    """
    try:
        pw = sync_playwright().start()
    except Exception as e:
        raise BrowserLaunchError(f"Browser launch failed: {e}") from e

    browser = None
    try:
        try:
            browser = _launch(pw, headless=headless, slow_mo_ms=slow_mo_ms)
            context = browser.new_context(accept_downloads=True, color_scheme="light")
            page = context.new_page()
        except Exception as e:
            raise BrowserLaunchError(f"Browser launch failed: {e}") from e

        logger.debug("Browser session started (headless=%s).", headless)
        yield PortalSession(browser=browser, context=context, page=page)
    finally:
        if browser is not None:
            try:
                browser.close()
            except Exception:
                logger.debug("Browser close failed.", exc_info=True)
        try:
            pw.stop()
        except Exception:
            logger.debug("Playwright stop failed.", exc_info=True)
        logger.debug("Browser session released.")
