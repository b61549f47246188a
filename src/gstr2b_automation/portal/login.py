from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol

from ..cancellation import AutomationCancelled
from ..models import CaptchaLimitReason, CaptchaResolution, LoginOutcome, LoginResult


logger = logging.getLogger(__name__)

# Only a captcha mismatch is retried; two mismatches in a row means the recognition chain is
# producing garbage and further paid calls are wasted.
MAX_CAPTCHA_MISMATCH_ATTEMPTS = 2

_WS_RE = re.compile(r"\s+")
_DEFAULT_ERROR_HINT = re.compile(r"invalid|enter valid|error|failed|incorrect|password", re.I)


class LoginErrorKind(str, Enum):
    NONE = "none"
    CAPTCHA_MISMATCH = "captcha_mismatch"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNRECOGNIZED = "unrecognized"


# Evaluated in order; first match wins.
LOGIN_ERROR_RULES: tuple[tuple[re.Pattern[str], LoginErrorKind], ...] = (
    (re.compile(r"enter\s+valid\s+letters?\s+shown", re.I), LoginErrorKind.CAPTCHA_MISMATCH),
    (re.compile(r"invalid\s+username\s+or\s+password", re.I), LoginErrorKind.INVALID_CREDENTIALS),
)


def classify_login_error(text: str) -> LoginErrorKind:
    s = (text or "").strip()
    if not s:
        return LoginErrorKind.NONE
    for pattern, kind in LOGIN_ERROR_RULES:
        if pattern.search(s):
            return kind
    return LoginErrorKind.UNRECOGNIZED


def collect_error_text(texts: Iterable[str], *, hint: re.Pattern[str] = _DEFAULT_ERROR_HINT) -> str:
    """
    Collapse candidate error snippets into one " | "-joined string (whitespace-normalized, deduped,
    order-preserving). Snippets that don't look like an error are dropped.
    """
    out: list[str] = []
    seen: set[str] = set()
    for raw in texts:
        t = _WS_RE.sub(" ", raw or "").strip()
        if not t or len(t) > 300 or t in seen:
            continue
        if not hint.search(t):
            continue
        out.append(t)
        seen.add(t)
    return " | ".join(out)


@dataclass(frozen=True)
class LoginPageState:
    login_form_visible: bool
    dashboard_visible: bool
    error_text: str = ""

    @property
    def logged_in(self) -> bool:
        return self.dashboard_visible and not self.login_form_visible


class LoginDriver(Protocol):
    """
    Page-level operations the state machine needs. `GstPortalClient` implements this against
    Playwright; tests use a scripted fake.
    """

    def fill_credentials(self) -> None:
        ...

    def solve_captcha(self) -> CaptchaResolution:
        ...

    def submit(self, code: str) -> None:
        ...

    def read_state(self) -> LoginPageState:
        ...

    def refresh_captcha(self) -> None:
        ...


class LoginStateMachine:
    """
    FillCredentials -> SolveCaptcha -> Submit -> Evaluate, looping back to SolveCaptcha only on a
    captcha mismatch. Always terminates: at most MAX_CAPTCHA_MISMATCH_ATTEMPTS mismatch cycles, and
    each SolveCaptcha is itself bounded by the resolver's attempt limit.
    """

    def __init__(self, driver: LoginDriver, *, max_mismatches: int = MAX_CAPTCHA_MISMATCH_ATTEMPTS) -> None:
        self.driver = driver
        self.max_mismatches = max(1, int(max_mismatches))

    def run(self) -> LoginResult:
        mismatches = 0
        last_error = ""

        while True:
            try:
                self.driver.fill_credentials()

                cap = self.driver.solve_captcha()
                if cap.quota_exhausted:
                    return LoginResult(
                        outcome=LoginOutcome.CAPTCHA_QUOTA_EXHAUSTED,
                        detail=last_error or None,
                        captcha_reason=CaptchaLimitReason.PROVIDER_QUOTA,
                        mismatch_count=mismatches,
                    )
                if not cap.code:
                    logger.warning("No captcha code obtained; giving up on login.")
                    return LoginResult(
                        outcome=LoginOutcome.CAPTCHA_QUOTA_EXHAUSTED,
                        detail=last_error or None,
                        captcha_reason=CaptchaLimitReason.UNSOLVED,
                        mismatch_count=mismatches,
                    )

                self.driver.submit(cap.code)
                state = self.driver.read_state()
            except AutomationCancelled:
                raise
            except Exception as e:
                logger.warning("Login attempt raised unexpectedly: %s", e)
                logger.debug("Login attempt failure", exc_info=True)
                return LoginResult(
                    outcome=LoginOutcome.LOGIN_FAILED,
                    detail=last_error or str(e) or None,
                    mismatch_count=mismatches,
                )

            if state.logged_in:
                logger.info("Login succeeded.")
                return LoginResult(outcome=LoginOutcome.SUCCESS, mismatch_count=mismatches)

            if state.error_text:
                last_error = state.error_text
                logger.info("Detected login error text: %s", state.error_text)

            if not state.login_form_visible:
                # Left the login form but no dashboard marker: some page we don't know.
                logger.warning("Login form gone but dashboard indicator missing; treating as login failure.")
                return LoginResult(
                    outcome=LoginOutcome.LOGIN_FAILED,
                    detail=last_error or "Post-login page not recognized",
                    unrecognized=True,
                    mismatch_count=mismatches,
                )

            kind = classify_login_error(state.error_text)

            if kind is LoginErrorKind.CAPTCHA_MISMATCH:
                mismatches += 1
                logger.info("Captcha mismatch %d of %d.", mismatches, self.max_mismatches)
                if mismatches >= self.max_mismatches:
                    return LoginResult(
                        outcome=LoginOutcome.CAPTCHA_QUOTA_EXHAUSTED,
                        detail=last_error or None,
                        captcha_reason=CaptchaLimitReason.MISMATCH_BUDGET,
                        mismatch_count=mismatches,
                    )
                try:
                    self.driver.refresh_captcha()
                except AutomationCancelled:
                    raise
                except Exception:
                    logger.debug("Captcha refresh after mismatch failed.", exc_info=True)
                continue

            if kind is LoginErrorKind.INVALID_CREDENTIALS:
                return LoginResult(
                    outcome=LoginOutcome.INVALID_CREDENTIALS,
                    detail=last_error or None,
                    mismatch_count=mismatches,
                )

            # Still on the login form with an unknown message (or none at all). Reported as invalid
            # credentials, but flagged so an unmatched portal message shows up in monitoring.
            logger.warning(
                "Unrecognized login state (error text=%r); reporting invalid credentials.",
                state.error_text or "",
            )
            return LoginResult(
                outcome=LoginOutcome.INVALID_CREDENTIALS,
                detail=last_error or None,
                unrecognized=True,
                mismatch_count=mismatches,
            )
