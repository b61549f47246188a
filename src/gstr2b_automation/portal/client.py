from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from playwright.sync_api import Locator, Page

from ..cancellation import AutomationCancelled, CancellationToken
from ..config import PortalConfig
from ..models import CaptchaResolution, DownloadOutcome, ErrorCode, LoginResult
from .captcha import CaptchaResolver
from .login import LOGIN_ERROR_RULES, LoginPageState, LoginStateMachine, collect_error_text
from .navigation import (
    choose_action,
    fiscal_year_patterns,
    match_option,
    month_patterns,
    quarter_patterns,
    score_candidate,
)
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

_PENDING_RE = re.compile(r"GSTR\s*-?2B.*(being\s+generated|should\s+be\s+available)", re.I)

_ANCESTOR_TEXTS_JS = """
(node, maxDepth) => {
  const out = [];
  let el = node;
  for (let depth = 0; el && depth <= maxDepth; depth++) {
    out.push((el.innerText || '').replace(/\\s+/g, ' ').trim());
    el = el.parentElement;
  }
  return out;
}
"""


def find_pending_banner(body_text: str) -> Optional[str]:
    """
    The portal answers a premature request with a banner like
    "GSTR-2B for the selected period is being generated. It should be available ... check back later".
    Only lines naming GSTR-2B count; generic help text ("... should be available next period") does not.
    """
    for line in (body_text or "").splitlines():
        s = line.strip()
        if s and len(s) <= 500 and _PENDING_RE.search(s):
            return s
    return None


def find_failure_text(body_text: str, pattern: str) -> str:
    rx = re.compile(pattern, re.I)
    for line in (body_text or "").splitlines():
        s = line.strip()
        if s and len(s) <= 300 and rx.search(s):
            return s
    return ""


@dataclass(frozen=True)
class PortalCredentials:
    username: str
    password: str = field(repr=False)


@dataclass
class PeriodSelection:
    fiscal_year: bool = False
    quarter: bool = False
    month: bool = False

    @property
    def complete(self) -> bool:
        return self.fiscal_year and self.quarter and self.month


class GstPortalClient:
    """
    GST services portal automation for one page/session.

    Also serves as the `LoginDriver` for `LoginStateMachine`. Every wait goes through `_pause` so a
    cancelled run stops at the next suspension point.
    """

    def __init__(
        self,
        page: Page,
        *,
        creds: PortalCredentials,
        resolver: CaptchaResolver,
        portal: Optional[PortalConfig] = None,
        selectors: Optional[PortalSelectors] = None,
        token: Optional[CancellationToken] = None,
        debug_dir: str = "data/debug",
        step_debug: bool = False,
        step_delay_ms: int = 0,
    ) -> None:
        self.page = page
        self.creds = creds
        self.resolver = resolver
        self.portal = portal or PortalConfig()
        self.selectors = selectors or PortalSelectors()
        self.token = token
        self.debug_dir = debug_dir

        self._step_debug_enabled = bool(step_debug)
        self._step_counter = 0
        self._step_delay_ms = int(step_delay_ms or 0)

        self._transfer: Any = None
        self._listening = False

    # -- waits ---------------------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self.token is not None:
            self.token.check()

    def _pause(self, ms: int) -> None:
        remaining = int(ms)
        while True:
            self._check_cancelled()
            if remaining <= 0:
                return
            chunk = min(remaining, 500)
            self.page.wait_for_timeout(chunk)
            remaining -= chunk

    def _wait_visible(self, loc: Locator, *, timeout_ms: int) -> bool:
        self._check_cancelled()
        try:
            loc.wait_for(state="visible", timeout=timeout_ms)
            return True
        except Exception:
            return False

    def _body_text(self) -> str:
        try:
            return self.page.inner_text("body", timeout=5_000)
        except Exception:
            return ""

    # -- login ---------------------------------------------------------------------------------

    def open_login_page(self) -> bool:
        logger.info("Opening GST login page...")
        self._check_cancelled()
        try:
            self.page.goto(
                self.portal.login_url,
                wait_until="domcontentloaded",
                timeout=self.portal.page_load_timeout_ms,
            )
        except Exception as e:
            logger.error("Failed to load login page: %s", e)
            self._save_debug(name_prefix="login_page_load_failed")
            return False
        try:
            self.page.wait_for_load_state("networkidle", timeout=15_000)
        except Exception:
            logger.debug("Login page network-idle wait timed out; continuing.")
        self._step("login_page_loaded")
        return True

    def login(self) -> LoginResult:
        result = LoginStateMachine(self).run()
        self._step(f"login_{result.outcome.value}")
        return result

    def fill_credentials(self) -> None:
        self._check_cancelled()
        for sel, value in (
            (self.selectors.username_input, self.creds.username),
            (self.selectors.password_input, self.creds.password),
        ):
            try:
                loc = self.page.locator(sel).first
                if loc.is_visible():
                    loc.fill(value)
            except Exception:
                logger.debug("Could not fill %s.", sel, exc_info=True)
        self._pause(1_200)

    def solve_captcha(self) -> CaptchaResolution:
        return self.resolver.resolve(self.page, pause=self._pause)

    def refresh_captcha(self) -> None:
        self.resolver.refresh_captcha(self.page)
        self._pause(900)

    def submit(self, code: str) -> None:
        try:
            self.page.fill(self.selectors.captcha_input, code)
        except Exception:
            logger.debug("Could not fill captcha input.", exc_info=True)
        self._click_login()

    def _click_login(self) -> None:
        frames = [self.page.main_frame, *self.page.frames]
        for sel in self.selectors.login_submit:
            for frame in frames:
                try:
                    loc = frame.locator(sel)
                    if loc.count() <= 0:
                        continue
                    btn = loc.first
                    self._wait_visible(btn, timeout_ms=5_000)
                    if not btn.is_enabled():
                        continue
                    btn.scroll_into_view_if_needed(timeout=2_000)
                    btn.click(timeout=3_000)
                    logger.debug("Clicked login selector: %s", sel)
                    return
                except AutomationCancelled:
                    raise
                except Exception:
                    continue

        logger.info("Login button not clicked with CSS; using JS fallback.")
        try:
            self.page.evaluate(
                """
                () => {
                  const cand = [...document.querySelectorAll('button[type=submit],button,input[type=submit]')]
                    .find(el => /login/i.test(el.textContent || el.value || ''));
                  if (cand) cand.click();
                }
                """
            )
        except Exception:
            logger.debug("JS login click failed.", exc_info=True)

    def _dashboard_visible(self) -> bool:
        try:
            return self.page.locator(f"text=/{self.selectors.dashboard_indicator}/i").first.is_visible()
        except Exception:
            return False

    def _login_form_visible(self) -> bool:
        for sel in (self.selectors.login_button_visible, self.selectors.username_input):
            try:
                if self.page.locator(sel).first.is_visible():
                    return True
            except Exception:
                continue
        return False

    def _login_error_text(self) -> str:
        hint = re.compile(self.selectors.login_error_hint, re.I)
        texts: list[str] = []
        try:
            loc = self.page.locator(self.selectors.login_error_containers)
            for i in range(min(int(loc.count()), 50)):
                try:
                    el = loc.nth(i)
                    if el.is_visible():
                        texts.append(el.inner_text(timeout=1_000))
                except Exception:
                    continue
        except Exception:
            pass

        found = collect_error_text(texts, hint=hint)
        if found:
            return found

        # Messages outside the known containers: only accept lines a classification rule knows.
        lines = [
            ln for ln in self._body_text().splitlines() if any(p.search(ln) for p, _ in LOGIN_ERROR_RULES)
        ]
        return collect_error_text(lines, hint=hint)

    def read_state(self) -> LoginPageState:
        logger.info("Waiting for login response...")
        deadline = time.monotonic() + self.portal.login_response_timeout_ms / 1000
        while time.monotonic() < deadline:
            if self._dashboard_visible() or self._login_error_text():
                break
            self._pause(500)
        self._pause(2_000)

        dashboard = self._dashboard_visible()
        state = LoginPageState(
            login_form_visible=self._login_form_visible() and not dashboard,
            dashboard_visible=dashboard,
            error_text=self._login_error_text(),
        )
        if not state.logged_in:
            self._save_debug(name_prefix="login_attempt")
        return state

    # -- navigation ----------------------------------------------------------------------------

    def _verified_click(self, loc: Locator, *, settle_ms: int = 1_000, timeout_ms: int = 6_000) -> bool:
        if not self._wait_visible(loc, timeout_ms=5_000):
            return False
        try:
            if not loc.is_enabled():
                return False
            loc.scroll_into_view_if_needed(timeout=2_000)
            self._pause(settle_ms)
            loc.click(timeout=timeout_ms)
            return True
        except Exception as e:
            logger.debug("Click failed: %s", e)
            return False

    def _js_click(self, loc: Locator) -> bool:
        self._check_cancelled()
        try:
            loc.evaluate("el => el.click()")
            return True
        except Exception as e:
            logger.debug("JS click failed: %s", e)
            return False

    def _first_present(self, selectors: tuple[str, ...]) -> Optional[Locator]:
        for sel in selectors:
            try:
                loc = self.page.locator(sel).first
                if loc.count() > 0:
                    return loc
            except Exception:
                continue
        return None

    def open_dashboard(self) -> bool:
        logger.info("Navigating to Returns Dashboard...")
        indicator = self.page.locator(f"text=/{self.selectors.dashboard_indicator}/i").first
        if not self._wait_visible(indicator, timeout_ms=20_000):
            logger.warning("Dashboard entry not visible; continuing on current page.")

        clicked = False
        for sel in self.selectors.dashboard_entry:
            loc = self.page.locator(sel).first
            try:
                if loc.count() <= 0:
                    continue
            except Exception:
                continue
            if self._verified_click(loc, settle_ms=300, timeout_ms=5_000):
                clicked = True
                break

        if not clicked:
            logger.info("Dashboard click failed with selectors; trying JS fallback.")
            try:
                clicked = bool(
                    self.page.evaluate(
                        """
                        () => {
                          const el = [...document.querySelectorAll('a,button,span,div')]
                            .find(e => /return\\s+dashboard/i.test((e.innerText || '').trim()) && e.children.length === 0);
                          if (!el) return false;
                          el.click();
                          return true;
                        }
                        """
                    )
                )
            except Exception:
                logger.debug("JS dashboard click failed.", exc_info=True)

        if clicked:
            self._wait_visible(self.page.locator(self.selectors.period_select).first, timeout_ms=15_000)
            self._step("dashboard_opened")
        else:
            self._save_debug(name_prefix="dashboard_not_opened")
        return clicked

    def _choose_option(self, select: Locator, patterns: list[str]) -> bool:
        try:
            if select.count() <= 0:
                logger.info("Select element not found.")
                return False
        except Exception:
            return False
        self._wait_visible(select, timeout_ms=5_000)

        options = select.locator("option")
        try:
            texts = [t.strip() for t in options.all_text_contents()]
        except Exception:
            texts = []
        if not texts:
            logger.info("No options found in select element.")
            return False

        idx = match_option(texts, patterns)
        if idx is None:
            logger.warning("No option matched patterns %s (options: %s)", patterns, texts[:8])
            return False

        try:
            value = options.nth(idx).get_attribute("value")
        except Exception:
            value = None
        try:
            if value:
                select.select_option(value=value)
            else:
                select.select_option(label=texts[idx])
        except Exception:
            try:
                select.select_option(label=texts[idx])
            except Exception as e:
                logger.warning("Could not select %r: %s", texts[idx], e)
                return False
        logger.info("Selected %r (patterns=%s)", texts[idx], patterns)
        return True

    def select_period(self, *, fiscal_year: str, quarter: str, month: str) -> PeriodSelection:
        selects = self.page.locator(self.selectors.period_select)
        self._wait_visible(selects.first, timeout_ms=20_000)
        try:
            n = int(selects.count())
        except Exception:
            n = 0
        if n < 3:
            logger.warning("Expected 3 period dropdowns but found %d; continuing.", n)
        self._pause(2_000)

        out = PeriodSelection()
        plan = (
            ("fiscal_year", fiscal_year_patterns(fiscal_year)),
            ("quarter", quarter_patterns(quarter)),
            ("month", month_patterns(month)),
        )
        for idx, (name, patterns) in enumerate(plan):
            ok = self._choose_option(selects.nth(idx), patterns)
            setattr(out, name, ok)
            if ok:
                # Later dropdowns are repopulated after each change.
                self._pause(1_000)
        self._step("period_selected")
        return out

    def search(self) -> bool:
        loc = self._first_present(self.selectors.search_button)
        if loc is None or not self._verified_click(loc, settle_ms=500, timeout_ms=5_000):
            logger.warning("No search button found or clicked.")
            return False
        self._wait_visible(self.page.locator(self.selectors.document_action_buttons).first, timeout_ms=15_000)
        self._step("search_results")
        return True

    def open_document_section(self) -> bool:
        target = self.portal.document_code
        self._pause(1_500)
        buttons = self.page.locator(self.selectors.document_action_buttons)
        self._wait_visible(buttons.first, timeout_ms=15_000)
        try:
            total = min(int(buttons.count()), 25)
        except Exception:
            total = 0
        if not total:
            logger.warning("No document action buttons found.")
            return False

        candidates = []
        contexts: list[dict[str, Any]] = []
        for i in range(total):
            try:
                texts = buttons.nth(i).evaluate(_ANCESTOR_TEXTS_JS, self.selectors.document_context_levels)
            except Exception:
                logger.debug("Could not read context for button %d.", i, exc_info=True)
                continue
            contexts.append({"index": i, "texts": [str(t) for t in (texts or [])]})
            cand = score_candidate(i, list(texts or []), target)
            logger.debug("Button %d: codes=%s block_len=%d", i, cand.codes, cand.length)
            candidates.append(cand)

        chosen = choose_action(candidates)
        if chosen is None or self._step_debug_enabled:
            self._save_json("document_actions", contexts)
        if chosen is None:
            logger.warning("No %s action among %d buttons.", target, total)
            self._save_debug(name_prefix="document_action_not_found")
            return False

        logger.info("Selected %s action (button %d, codes=%s).", target, chosen.index, list(chosen.codes))
        btn = buttons.nth(chosen.index)
        if not (self._verified_click(btn) or self._js_click(btn)):
            return False

        generate = self._first_present(self.selectors.generate_buttons)
        if generate is not None:
            self._wait_visible(generate, timeout_ms=15_000)
        else:
            self._pause(3_000)
        self._step("document_section_opened")
        return True

    # -- generation + download -----------------------------------------------------------------

    def _on_download(self, download: Any) -> None:
        if self._transfer is None:
            self._transfer = download
            logger.info("File transfer started (suggested=%s).", getattr(download, "suggested_filename", "?"))
        else:
            logger.info("Ignoring additional file transfer.")

    def _listen_for_transfers(self) -> None:
        if not self._listening:
            self.page.on("download", self._on_download)
            self._listening = True

    def _pending_banner(self) -> Optional[str]:
        return find_pending_banner(self._body_text())

    def _wait_for_transfer(self, timeout_ms: int) -> tuple[Any, Optional[str]]:
        """
        Returns (transfer, None), (None, banner text) or (None, None) on timeout.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            if self._transfer is not None:
                return self._transfer, None
            banner = self._pending_banner()
            if banner:
                return None, banner
            if time.monotonic() >= deadline:
                return None, None
            self._pause(1_000)

    def _locate_generate_button(self) -> Optional[Locator]:
        loc = self._first_present(self.selectors.generate_buttons)
        if loc is not None:
            return loc
        try:
            fallback = (
                self.page.locator("button")
                .filter(has_text=re.compile(self.selectors.generate_fallback_text, re.I))
                .first
            )
            if fallback.count() > 0:
                return fallback
        except Exception:
            pass
        return None

    def _pending(self, banner: str) -> DownloadOutcome:
        logger.info("Detected pending generation banner: %s", banner)
        return DownloadOutcome(
            success=False,
            error_code=ErrorCode.GENERATION_PENDING,
            error="GSTR-2B not generated yet",
            error_detail=banner,
            raw_banner_text=banner,
        )

    def generate_and_capture(self, *, screenshot_path: Optional[Path] = None) -> DownloadOutcome:
        self._listen_for_transfers()
        self._wait_visible(self.page.locator("text=/GSTR-?2B/i").first, timeout_ms=20_000)
        try:
            self.page.wait_for_load_state("networkidle", timeout=10_000)
        except Exception:
            logger.debug("Network idle timeout, continuing.")
        self._pause(2_000)

        found = False
        clicked = False
        for attempt in range(1, 6):
            btn = self._locate_generate_button()
            if btn is None:
                logger.info("Generate button not found (attempt %d/5).", attempt)
                banner = self._pending_banner()
                if banner:
                    return self._pending(banner)
                self._pause(2_000)
                continue
            found = True
            if self._verified_click(btn):
                clicked = True
            elif attempt >= 3:
                logger.info("Trying element-level click fallback (attempt %d).", attempt)
                clicked = self._js_click(btn)
            if clicked:
                logger.info("Generate button clicked (attempt %d).", attempt)
                break
            self._pause(2_000)

        if not clicked:
            # The portal may show the pending banner in place of the generate action.
            banner = self._pending_banner()
            if banner:
                return self._pending(banner)
        if not found:
            self._save_debug(name_prefix="generate_button_not_found")
            return DownloadOutcome(
                success=False,
                error_code=ErrorCode.BUTTON_NOT_FOUND,
                error="Generate Excel button not found after multiple attempts",
            )
        if not clicked:
            self._save_debug(name_prefix="generate_button_click_failed")
            return DownloadOutcome(
                success=False,
                error_code=ErrorCode.BUTTON_CLICK_FAILED,
                error="Could not click GENERATE EXCEL button after multiple attempts",
            )

        # Let the banner (if any) render before waiting on the transfer.
        self._pause(3_000)
        transfer, banner = self._wait_for_transfer(self.portal.transfer_timeout_ms)
        if banner:
            return self._pending(banner)

        if transfer is None:
            logger.info("No immediate file transfer. Checking for secondary download action...")
            for sel in self.selectors.secondary_download_buttons:
                loc = self.page.locator(sel).first
                try:
                    if loc.count() <= 0:
                        continue
                except Exception:
                    continue
                logger.info("Found secondary download action: %s", sel)
                if not self._verified_click(loc):
                    continue
                transfer, banner = self._wait_for_transfer(self.portal.secondary_transfer_timeout_ms)
                if banner:
                    return self._pending(banner)
                if transfer is not None:
                    break

        if transfer is None:
            body = self._body_text()
            banner = find_pending_banner(body)
            if banner:
                return self._pending(banner)
            err_text = find_failure_text(body, self.selectors.failure_text)
            shot = self._diagnostic_screenshot(screenshot_path)
            return DownloadOutcome(
                success=False,
                error_code=ErrorCode.DOWNLOAD_FAILED,
                error=err_text or "Download event not detected",
                error_detail=err_text or None,
                debug_screenshot=shot,
            )

        return DownloadOutcome(success=True, transfer=transfer)

    def _diagnostic_screenshot(self, path: Optional[Path]) -> Optional[str]:
        self._save_debug(name_prefix="no_download")
        if path is None:
            return None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(path), full_page=True)
            return str(path)
        except Exception:
            logger.debug("Diagnostic screenshot failed.", exc_info=True)
            return None

    # -- debug artifacts -----------------------------------------------------------------------

    def _save_debug(self, *, name_prefix: str) -> None:
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(self.page.content(), encoding="utf-8")
            # Rendered text lets login/banner classification be replayed offline.
            try:
                (out_dir / f"{name_prefix}.txt").write_text(self.page.inner_text("body"), encoding="utf-8")
            except Exception:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    def _save_json(self, name: str, payload: Any) -> None:
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / f"{name}.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save %s.json.", name, exc_info=True)

    def _step(self, name: str) -> None:
        """
        If enabled, log step-by-step progress and save screenshots.
        """
        if not self._step_debug_enabled:
            return

        self._step_counter += 1
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_")[:60] or "step"
        prefix = f"step_{self._step_counter:02d}_{safe}"

        try:
            logger.info("Step %02d %s (url=%s)", self._step_counter, name, getattr(self.page, "url", ""))
        except Exception:
            pass

        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
        except Exception:
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)

        if self._step_delay_ms > 0:
            self._pause(self._step_delay_ms)
