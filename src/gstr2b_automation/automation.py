from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, ContextManager, Optional

from .cancellation import AutomationCancelled, CancellationRegistry, CancellationToken, registry as default_registry
from .config import AppConfig
from .logging_config import mask
from .models import (
    AutomationRequest,
    AutomationResult,
    ErrorCode,
    LoginOutcome,
    LoginResult,
    normalize_fiscal_year,
)
from .portal.captcha import build_resolver
from .portal.client import GstPortalClient, PortalCredentials
from .portal.session import BrowserLaunchError, PortalSession, browser_session
from .storage import build_layout, encode_file, ensure_layout, persist_transfer, remove_files


logger = logging.getLogger(__name__)

SessionFactory = Callable[..., ContextManager[PortalSession]]
PortalFactory = Callable[[Any, CancellationToken, AutomationRequest], Any]

_LOGIN_FAILURES: dict[LoginOutcome, tuple[ErrorCode, str]] = {
    LoginOutcome.INVALID_CREDENTIALS: (ErrorCode.INVALID_CREDENTIALS, "username or password is incorrect"),
    LoginOutcome.CAPTCHA_QUOTA_EXHAUSTED: (ErrorCode.CAPTCHA_LIMIT, "captcha recharge is over"),
    LoginOutcome.LOGIN_FAILED: (ErrorCode.LOGIN_FAILED, "Login failed"),
}


class GstrAutomation:
    """
    Runs one GSTR-2B request end to end: validate, acquire a browser session, login, navigate,
    generate/capture, persist. Every exit path releases the session, deregisters the run and
    records the elapsed duration.

    `session_factory` and `portal_factory` default to Playwright and `GstPortalClient`; both are
    injectable so the pipeline can be driven without a browser.
    """

    def __init__(
        self,
        cfg: Optional[AppConfig] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
        portal_factory: Optional[PortalFactory] = None,
        registry: Optional[CancellationRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg or AppConfig()
        self.session_factory = session_factory or browser_session
        self.portal_factory = portal_factory or self._default_portal
        self.registry = registry or default_registry
        self._clock = clock

    def _default_portal(self, page: Any, token: CancellationToken, req: AutomationRequest) -> GstPortalClient:
        return GstPortalClient(
            page,
            creds=PortalCredentials(username=req.username, password=req.password),
            resolver=build_resolver(self.cfg.captcha),
            portal=self.cfg.portal,
            token=token,
            debug_dir=self.cfg.browser.debug_dir,
            step_debug=self.cfg.browser.step_debug,
        )

    def run(self, request: AutomationRequest, *, request_id: Optional[str] = None) -> AutomationResult:
        start = self._clock()
        result = AutomationResult()
        try:
            missing = request.missing_fields()
            if missing:
                logger.warning("Missing required parameters: %s", ", ".join(missing))
                result.error_code = ErrorCode.MISSING_PARAMS
                result.error = "Missing required parameters"
                result.error_detail = ", ".join(missing)
                return result

            req = request.model_copy(update={"fiscal_year": normalize_fiscal_year(request.fiscal_year)})
            logger.info(
                "Starting GSTR-2B automation user=%s period=%s/%s/%s client=%r",
                mask(req.username),
                req.fiscal_year,
                req.quarter,
                req.month,
                req.client_folder,
            )
            with self.registry.track(request_id) as token:
                self._run_session(req, token, result)
            return result
        finally:
            result.duration_ms = int(round((self._clock() - start) * 1000))
            logger.info(
                "Automation finished success=%s error_code=%s duration_ms=%d",
                result.success,
                result.error_code.value if result.error_code else None,
                result.duration_ms,
            )

    def _run_session(self, req: AutomationRequest, token: CancellationToken, result: AutomationResult) -> None:
        try:
            token.check()
            with self.session_factory(headless=req.headless, slow_mo_ms=self.cfg.browser.slow_mo_ms) as session:
                portal = self.portal_factory(session.page, token, req)
                self._drive(portal, req, token, result)
        except BrowserLaunchError as e:
            logger.error("%s", e)
            self._fail(result, ErrorCode.BROWSER_LAUNCH_ERROR, str(e))
        except AutomationCancelled as e:
            logger.info("%s", e)
            self._fail(result, ErrorCode.STOPPED_BY_USER, "Process stopped by user")
        except Exception as e:
            logger.exception("Unhandled automation error")
            self._fail(result, ErrorCode.UNHANDLED_ERROR, str(e) or e.__class__.__name__)

    @staticmethod
    def _fail(result: AutomationResult, code: ErrorCode, error: str, detail: Optional[str] = None) -> None:
        result.success = False
        result.error_code = code
        result.error = error
        result.error_detail = detail
        result.file_base64 = None

    def _apply_login_failure(self, login: LoginResult, result: AutomationResult) -> None:
        code, message = _LOGIN_FAILURES[login.outcome]
        if login.captcha_reason is not None:
            logger.warning("Captcha limit reached (reason=%s).", login.captcha_reason.value)
        if login.unrecognized:
            logger.warning("Login outcome %s chosen without a recognized portal message.", login.outcome.value)
        self._fail(result, code, message, login.detail)

    def _drive(self, portal: Any, req: AutomationRequest, token: CancellationToken, result: AutomationResult) -> None:
        if not portal.open_login_page():
            self._fail(result, ErrorCode.PAGE_LOAD_ERROR, "Failed to load login page")
            return

        login = portal.login()
        if login.outcome is not LoginOutcome.SUCCESS:
            self._apply_login_failure(login, result)
            return

        # Navigation misses are not fatal here: the generate step reports what is actually absent.
        if not portal.open_dashboard():
            logger.warning("Returns dashboard not opened; continuing.")
        selection = portal.select_period(fiscal_year=req.fiscal_year, quarter=req.quarter, month=req.month)
        if not selection.complete:
            logger.warning("Period selection incomplete: %s", selection)
        if not portal.search():
            logger.warning("Search not triggered; continuing.")
        if not portal.open_document_section():
            logger.warning("Document section not opened; continuing.")

        layout = build_layout(
            req.storage_root,
            req.fiscal_year,
            req.quarter,
            req.month,
            req.client_folder,
        )
        logger.info("Preparing folder structure under %s", layout.root)
        ensure_layout(layout)

        token.check()
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        outcome = portal.generate_and_capture(
            screenshot_path=Path(self.cfg.browser.debug_dir) / f"no-download-{stamp}.png",
        )
        if not outcome.success:
            self._fail(
                result,
                outcome.error_code or ErrorCode.DOWNLOAD_FAILED,
                outcome.error or "Download failed",
                outcome.error_detail,
            )
            return

        persisted = persist_transfer(outcome.transfer, layout)
        if persisted is None:
            self._fail(result, ErrorCode.DOWNLOAD_FAILED, "Download could not be saved")
            return
        result.file_path = str(persisted.path)

        if req.return_file:
            try:
                result.file_base64 = encode_file(persisted.path)
            except OSError as e:
                logger.warning("Read file for base64 failed: %s", e)
                self._fail(result, ErrorCode.FILE_READ_ERROR, f"File read error: {e}")
                return

        result.success = True
        result.error_code = None
        result.error = None

        if req.cleanup_downloads:
            result.cleaned = remove_files(persisted.all_paths())
            if result.cleaned:
                logger.info("Cleaned up downloaded file(s) for %s", layout.file_name)


def run_automation(request: AutomationRequest, cfg: Optional[AppConfig] = None) -> AutomationResult:
    return GstrAutomation(cfg).run(request)


def stop_current(registry: Optional[CancellationRegistry] = None) -> bool:
    """
    Ask the most recently started in-flight automation to stop. Returns False if none is running.
    """
    return (registry or default_registry).stop_current()
