from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_DOC_CODE_RE = re.compile(r"^GSTR\d+[A-Z]?$")

DEFAULT_LOGIN_URL = "https://services.gst.gov.in/services/login"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most users only need `.env`. YAML remains an optional override.
    """
    return {
        "portal": {
            "login_url": os.getenv("GST_LOGIN_URL", DEFAULT_LOGIN_URL),
        },
        "captcha": {
            "truecaptcha_userid": os.getenv("TRUECAPTCHA_USERID", ""),
            "truecaptcha_apikey": os.getenv("TRUECAPTCHA_APIKEY", ""),
            "anticaptcha_api_key": os.getenv("ANTICAPTCHA_API_KEY", ""),
            "ocrspace_api_key": os.getenv("OCRSPACE_API_KEY", "") or "helloworld",
        },
        "storage": {
            "root": os.getenv("GST_STORAGE_PATH", "downloads"),
            "cleanup_downloads": _env_bool("CLEANUP_DOWNLOADS", default=False),
        },
        "browser": {
            "headless": _env_bool("HEADLESS", default=True),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/automation.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    GST services portal. Selectors live in `portal.selectors`; this only holds addresses and timing.
    """

    login_url: str = DEFAULT_LOGIN_URL
    document_code: str = "GSTR2B"
    page_load_timeout_ms: int = 30_000
    login_response_timeout_ms: int = 20_000
    transfer_timeout_ms: int = 60_000
    secondary_transfer_timeout_ms: int = 45_000

    @model_validator(mode="after")
    def _validate(self) -> "PortalConfig":
        url = (self.login_url or "").strip()
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.login_url must be a full URL like 'https://services.gst.gov.in/services/login'")
        code = re.sub(r"[\s-]+", "", self.document_code or "").upper()
        if not _DOC_CODE_RE.match(code):
            raise ValueError("portal.document_code must look like 'GSTR2B'")
        self.login_url = url
        self.document_code = code
        return self


class CaptchaConfig(BaseModel):
    truecaptcha_userid: str = ""
    truecaptcha_apikey: str = Field(default="", repr=False)
    anticaptcha_api_key: str = Field(default="", repr=False)
    # OCR.space publishes "helloworld" as a rate-limited demo key.
    ocrspace_api_key: str = Field(default="helloworld", repr=False)
    request_timeout_seconds: int = 30
    max_attempts: int = 3
    samples_dir: str = "data/samples"

    @model_validator(mode="after")
    def _validate(self) -> "CaptchaConfig":
        if self.max_attempts < 1:
            raise ValueError("captcha.max_attempts must be >= 1")
        return self


class StorageConfig(BaseModel):
    root: str = "downloads"
    return_file: bool = True
    cleanup_downloads: bool = False


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = 0
    debug_dir: str = "data/debug"
    step_debug: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/automation.log"


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    captcha: CaptchaConfig = CaptchaConfig()
    storage: StorageConfig = StorageConfig()
    browser: BrowserConfig = BrowserConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
