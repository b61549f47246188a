from __future__ import annotations

import base64
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

import requests
from playwright.sync_api import Frame, Locator, Page

from ..config import CaptchaConfig
from ..models import CaptchaAttempt, CaptchaResolution
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

TRUECAPTCHA_URL = "https://api.apitruecaptcha.org/one/gettext"
ANTICAPTCHA_URL = "https://api.anti-captcha.com"
OCRSPACE_URL = "https://api.ocr.space/parse/image"

_QUOTA_RE = re.compile(r"usage\s+limit|quota\s+exceeded|insufficient|expired", re.I)
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")
_VALID_CODE_RE = re.compile(r"^[A-Z0-9]{4,10}$")


def is_quota_error(message: Optional[str]) -> bool:
    return bool(_QUOTA_RE.search(message or ""))


def normalize_candidate(text: Optional[str]) -> str:
    return _NON_ALNUM_RE.sub("", (text or "").strip()).upper()


def is_valid_code(code: str) -> bool:
    return bool(_VALID_CODE_RE.match(code or ""))


@dataclass(frozen=True)
class ProviderReply:
    text: str = ""
    error: str = ""
    quota_exhausted: bool = False


class CaptchaProvider(Protocol):
    name: str

    def solve(self, image: bytes) -> ProviderReply:
        ...


class TrueCaptchaProvider:
    """
    Paid primary service. Replies `{"result": "..."}` or `{"error" | "error_message": "..."}`.
    """

    name = "truecaptcha"

    def __init__(
        self,
        *,
        userid: str,
        apikey: str,
        session: Optional[requests.Session] = None,
        timeout_seconds: int = 30,
    ) -> None:
        self.userid = userid
        self.apikey = apikey
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def solve(self, image: bytes) -> ProviderReply:
        if not self.userid or not self.apikey:
            return ProviderReply(error="TrueCaptcha credentials not configured")
        payload = {
            "userid": self.userid,
            "apikey": self.apikey,
            "data": base64.b64encode(image).decode("ascii"),
        }
        try:
            resp = self.session.post(TRUECAPTCHA_URL, json=payload, timeout=self.timeout_seconds)
            if not resp.ok:
                return ProviderReply(error=f"HTTP {resp.status_code}")
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            return ProviderReply(error=str(e))

        if isinstance(data, dict) and data.get("result"):
            return ProviderReply(text=str(data["result"]))

        if isinstance(data, dict):
            msg = str(data.get("error_message") or data.get("error") or json.dumps(data))
        else:
            msg = json.dumps(data)
        return ProviderReply(error=msg, quota_exhausted=is_quota_error(msg))


class AntiCaptchaProvider:
    """
    Optional paid secondary service (ImageToTextTask, polled via getTaskResult).
    """

    name = "anticaptcha"

    def __init__(
        self,
        *,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout_seconds: int = 30,
        poll_interval_seconds: float = 3.0,
        max_wait_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_wait_seconds = max_wait_seconds
        self._sleep = sleep

    def _call(self, method: str, body: dict) -> dict:
        resp = self.session.post(f"{ANTICAPTCHA_URL}/{method}", json=body, timeout=self.timeout_seconds)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected Anti-Captcha reply: {data!r}")
        return data

    def solve(self, image: bytes) -> ProviderReply:
        if not self.api_key:
            return ProviderReply(error="Anti-Captcha key not configured")
        try:
            created = self._call(
                "createTask",
                {
                    "clientKey": self.api_key,
                    "task": {
                        "type": "ImageToTextTask",
                        "body": base64.b64encode(image).decode("ascii"),
                        "phrase": False,
                        "case": True,
                        "numeric": 0,
                        "math": False,
                        "minLength": 4,
                        "maxLength": 10,
                    },
                    "softId": 0,
                },
            )
            if created.get("errorId"):
                msg = str(created.get("errorDescription") or created.get("errorCode") or "createTask failed")
                return ProviderReply(error=msg, quota_exhausted=is_quota_error(msg))

            task_id = created.get("taskId")
            waited = 0.0
            while waited < self.max_wait_seconds:
                self._sleep(self.poll_interval_seconds)
                waited += self.poll_interval_seconds
                res = self._call("getTaskResult", {"clientKey": self.api_key, "taskId": task_id})
                if res.get("errorId"):
                    msg = str(res.get("errorDescription") or res.get("errorCode") or "getTaskResult failed")
                    return ProviderReply(error=msg, quota_exhausted=is_quota_error(msg))
                if res.get("status") == "ready":
                    return ProviderReply(text=str((res.get("solution") or {}).get("text") or ""))
        except (requests.RequestException, ValueError) as e:
            return ProviderReply(error=str(e))

        return ProviderReply(error=f"Anti-Captcha task not ready after {self.max_wait_seconds:.0f}s")


class OcrSpaceProvider:
    """
    Free-tier last resort. Multipart image upload; text in `ParsedResults[0].ParsedText`.
    """

    name = "ocrspace"

    def __init__(
        self,
        *,
        api_key: str = "helloworld",
        session: Optional[requests.Session] = None,
        timeout_seconds: int = 30,
    ) -> None:
        self.api_key = api_key or "helloworld"
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def solve(self, image: bytes) -> ProviderReply:
        try:
            resp = self.session.post(
                OCRSPACE_URL,
                headers={"apikey": self.api_key},
                data={"language": "eng", "isOverlayRequired": "false", "OCREngine": "2"},
                files={"file": ("captcha.png", image, "image/png")},
                timeout=self.timeout_seconds,
            )
            if not resp.ok:
                return ProviderReply(error=f"HTTP {resp.status_code}")
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            return ProviderReply(error=str(e))

        if not isinstance(data, dict):
            return ProviderReply(error=f"Unexpected OCR.space reply: {data!r}")
        if data.get("IsErroredOnProcessing"):
            err = data.get("ErrorMessage")
            if isinstance(err, list):
                err = "; ".join(str(x) for x in err)
            return ProviderReply(error=str(err or "OCR.space processing error"))

        results = data.get("ParsedResults") or []
        parsed = ""
        if results and isinstance(results[0], dict):
            parsed = str(results[0].get("ParsedText") or "")
        return ProviderReply(text=parsed)


class CaptchaResolver:
    """
    Ordered fallback chain of recognition services around the login captcha.

    The primary service is authoritative about billing: once it reports quota exhaustion the
    resolution stops and no fallback is consulted, so a billing problem is never masked.
    """

    def __init__(
        self,
        *,
        primary: CaptchaProvider,
        fallbacks: Sequence[CaptchaProvider] = (),
        max_attempts: int = 3,
        samples_dir: Optional[str] = None,
        selectors: Optional[PortalSelectors] = None,
    ) -> None:
        self.primary = primary
        self.fallbacks = list(fallbacks)
        self.max_attempts = max(1, int(max_attempts))
        self.samples_dir = samples_dir
        self.selectors = selectors or PortalSelectors()

    def solve_image(self, image: bytes) -> tuple[Optional[CaptchaAttempt], bool]:
        """
        Run one image through the chain. Returns (accepted attempt or None, quota_exhausted).
        """
        reply = self.primary.solve(image)
        if reply.quota_exhausted:
            logger.warning("Captcha service %s reports quota exhausted: %s", self.primary.name, reply.error)
            return None, True

        accepted = self._accept(self.primary.name, reply, image)
        if accepted is not None:
            return accepted, False

        for provider in self.fallbacks:
            accepted = self._accept(provider.name, provider.solve(image), image)
            if accepted is not None:
                return accepted, False
        return None, False

    def _accept(self, name: str, reply: ProviderReply, image: bytes) -> Optional[CaptchaAttempt]:
        if not reply.text:
            logger.info("Captcha service %s returned no text: %s", name, reply.error or "<empty>")
            return None
        code = normalize_candidate(reply.text)
        if not is_valid_code(code):
            logger.info("Captcha service %s candidate %r rejected.", name, code)
            return None
        logger.info("Captcha service %s produced an accepted candidate (len=%d).", name, len(code))
        return CaptchaAttempt(image=image, strategy=name, candidate=code, valid=True)

    def resolve_with(
        self,
        capture: Callable[[], Optional[bytes]],
        refresh: Callable[[], None],
    ) -> CaptchaResolution:
        out = CaptchaResolution()
        for attempt in range(1, self.max_attempts + 1):
            image = capture()
            if not image:
                logger.info("Captcha image not captured (attempt %d/%d).", attempt, self.max_attempts)
            else:
                self._save_sample(image, name=f"captcha-{attempt}.png")
                accepted, quota = self.solve_image(image)
                if quota:
                    out.quota_exhausted = True
                    return out
                if accepted is not None:
                    out.attempts.append(accepted)
                    out.code = accepted.candidate
                    return out
                out.attempts.append(CaptchaAttempt(image=image, strategy="chain", candidate="", valid=False))
            refresh()

        logger.warning("All %d automated captcha attempts failed.", self.max_attempts)
        return out

    def resolve(self, page: Page, *, pause: Optional[Callable[[int], None]] = None) -> CaptchaResolution:
        wait = pause or page.wait_for_timeout

        def _capture() -> Optional[bytes]:
            el = self._locate_captcha_element(self.find_captcha_frame(page))
            if el is None:
                return None
            try:
                el.wait_for(timeout=6_000)
            except Exception:
                pass
            try:
                return el.screenshot()
            except Exception:
                logger.debug("Captcha screenshot failed.", exc_info=True)
                return None

        def _refresh() -> None:
            self.refresh_captcha(page)
            wait(1_000)

        return self.resolve_with(_capture, _refresh)

    def find_captcha_frame(self, page: Page) -> Frame:
        for frame in page.frames:
            try:
                url = frame.url or ""
            except Exception:
                continue
            if any(h in url.lower() for h in self.selectors.captcha_frame_url_hints):
                return frame
        return page.main_frame

    def _locate_captcha_element(self, scope: Frame) -> Optional[Locator]:
        for sel in (*self.selectors.captcha_image, self.selectors.captcha_canvas):
            try:
                loc = scope.locator(sel)
                if loc.count() > 0:
                    return loc.first
            except Exception:
                continue
        return None

    def refresh_captcha(self, page: Page) -> bool:
        frame = self.find_captcha_frame(page)
        for sel in self.selectors.captcha_refresh:
            try:
                loc = frame.locator(sel)
                if loc.count() > 0:
                    loc.first.click(timeout=1_000)
                    return True
            except Exception:
                continue
        return False

    def _save_sample(self, image: bytes, *, name: str) -> None:
        if not self.samples_dir:
            return
        try:
            out_dir = Path(self.samples_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / name).write_bytes(image)
        except Exception:
            logger.debug("Failed to save captcha sample %s.", name, exc_info=True)


def build_resolver(cfg: CaptchaConfig, *, selectors: Optional[PortalSelectors] = None) -> CaptchaResolver:
    session = requests.Session()
    timeout = cfg.request_timeout_seconds
    fallbacks: list[CaptchaProvider] = []
    if cfg.anticaptcha_api_key:
        fallbacks.append(AntiCaptchaProvider(api_key=cfg.anticaptcha_api_key, session=session, timeout_seconds=timeout))
    fallbacks.append(OcrSpaceProvider(api_key=cfg.ocrspace_api_key, session=session, timeout_seconds=timeout))
    return CaptchaResolver(
        primary=TrueCaptchaProvider(
            userid=cfg.truecaptcha_userid,
            apikey=cfg.truecaptcha_apikey,
            session=session,
            timeout_seconds=timeout,
        ),
        fallbacks=fallbacks,
        max_attempts=cfg.max_attempts,
        samples_dir=cfg.samples_dir,
        selectors=selectors,
    )
