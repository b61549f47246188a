from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


_SHORT_FY_RE = re.compile(r"^\s*(\d{2,4})\s*-\s*(\d{2})\s*$")


class ErrorCode(str, Enum):
    MISSING_PARAMS = "MISSING_PARAMS"
    BROWSER_LAUNCH_ERROR = "BROWSER_LAUNCH_ERROR"
    PAGE_LOAD_ERROR = "PAGE_LOAD_ERROR"
    CAPTCHA_LIMIT = "CAPTCHA_LIMIT"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    LOGIN_FAILED = "LOGIN_FAILED"
    BUTTON_NOT_FOUND = "BUTTON_NOT_FOUND"
    BUTTON_CLICK_FAILED = "BUTTON_CLICK_FAILED"
    GENERATION_PENDING = "GENERATION_PENDING"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    FILE_READ_ERROR = "FILE_READ_ERROR"
    UNHANDLED_ERROR = "UNHANDLED_ERROR"
    STOPPED_BY_USER = "STOPPED_BY_USER"


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    CAPTCHA_QUOTA_EXHAUSTED = "captcha_quota_exhausted"
    LOGIN_FAILED = "login_failed"


class CaptchaLimitReason(str, Enum):
    """
    Why a login ended as CAPTCHA_LIMIT. Callers only see CAPTCHA_LIMIT; the reason is kept for logs.
    """

    PROVIDER_QUOTA = "provider_quota"
    MISMATCH_BUDGET = "mismatch_budget"
    UNSOLVED = "unsolved"


def normalize_fiscal_year(value: str) -> str:
    """
    "2024-25" -> "2024-2025". Already-long forms are returned stripped.
    """
    s = (value or "").strip()
    m = _SHORT_FY_RE.match(s)
    if not m:
        return s
    start, end = m.group(1), m.group(2)
    if len(start) == 4 and len(end) == 2:
        return f"{start}-{start[:2]}{end}"
    if len(start) == 2:
        return f"20{start}-20{end}"
    return s


class AutomationRequest(BaseModel):
    username: str = ""
    password: str = Field(default="", repr=False)
    fiscal_year: str = ""
    quarter: str = ""
    month: str = ""
    client_folder: str = ""
    storage_root: str = "downloads"

    headless: bool = True
    return_file: bool = True
    cleanup_downloads: bool = False

    def missing_fields(self) -> list[str]:
        required = {
            "username": self.username,
            "password": self.password,
            "fiscal_year": self.fiscal_year,
            "quarter": self.quarter,
            "month": self.month,
        }
        return [k for k, v in required.items() if not (v or "").strip()]


class AutomationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = False
    file_path: Optional[str] = None
    file_base64: Optional[str] = Field(default=None, repr=False)
    duration_ms: int = 0
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    error_detail: Optional[str] = None
    cleaned: bool = False

    def to_response(self, *, include_file: bool = True) -> dict[str, Any]:
        exclude = None if include_file else {"file_base64"}
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude=exclude)


@dataclass
class CaptchaAttempt:
    image: bytes = field(repr=False)
    strategy: str
    candidate: str
    valid: bool


@dataclass
class CaptchaResolution:
    code: str = ""
    quota_exhausted: bool = False
    attempts: list[CaptchaAttempt] = field(default_factory=list)


@dataclass
class LoginResult:
    outcome: LoginOutcome
    detail: Optional[str] = None
    captcha_reason: Optional[CaptchaLimitReason] = None
    # Set when the outcome was chosen by the conservative fallback rather than a recognized message.
    unrecognized: bool = False
    mismatch_count: int = 0


@dataclass
class DownloadOutcome:
    success: bool
    file_path: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    error_detail: Optional[str] = None
    raw_banner_text: Optional[str] = None
    debug_screenshot: Optional[str] = None
    # Playwright `Download` (or any object with `suggested_filename`, `save_as()`, `path()`).
    transfer: Any = field(default=None, repr=False)
