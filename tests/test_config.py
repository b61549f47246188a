from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from gstr2b_automation.config import DEFAULT_LOGIN_URL, load_config


_ENV_KEYS = (
    "GST_LOGIN_URL",
    "TRUECAPTCHA_USERID",
    "TRUECAPTCHA_APIKEY",
    "ANTICAPTCHA_API_KEY",
    "OCRSPACE_API_KEY",
    "GST_STORAGE_PATH",
    "CLEANUP_DOWNLOADS",
    "HEADLESS",
    "LOG_LEVEL",
    "LOG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_without_yaml() -> None:
    cfg = load_config(None)
    assert cfg.portal.login_url == DEFAULT_LOGIN_URL
    assert cfg.portal.document_code == "GSTR2B"
    assert cfg.captcha.ocrspace_api_key == "helloworld"
    assert cfg.captcha.max_attempts == 3
    assert cfg.storage.root == "downloads"
    assert cfg.storage.cleanup_downloads is False
    assert cfg.browser.headless is True


def test_env_values_feed_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRUECAPTCHA_USERID", "me@example.com")
    monkeypatch.setenv("TRUECAPTCHA_APIKEY", "k-123")
    monkeypatch.setenv("GST_STORAGE_PATH", "/srv/gst")
    monkeypatch.setenv("CLEANUP_DOWNLOADS", "yes")
    monkeypatch.setenv("HEADLESS", "0")

    cfg = load_config(None)
    assert cfg.captcha.truecaptcha_userid == "me@example.com"
    assert cfg.captcha.truecaptcha_apikey == "k-123"
    assert cfg.storage.root == "/srv/gst"
    assert cfg.storage.cleanup_downloads is True
    assert cfg.browser.headless is False


def test_yaml_overrides_env_and_expands_vars(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GST_STORAGE_PATH", "/from/env")
    monkeypatch.setenv("MY_ANTI_KEY", "anti-xyz")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
captcha:
  anticaptcha_api_key: "${MY_ANTI_KEY}"
  max_attempts: 2
storage:
  root: "/from/yaml"
portal:
  document_code: "gstr-2b"
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.captcha.anticaptcha_api_key == "anti-xyz"
    assert cfg.captcha.max_attempts == 2
    # Keys not in YAML keep their env-derived defaults.
    assert cfg.captcha.ocrspace_api_key == "helloworld"
    assert cfg.storage.root == "/from/yaml"
    assert cfg.portal.document_code == "GSTR2B"


def test_missing_yaml_file_is_ignored(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "nope.yaml")
    assert cfg.portal.login_url == DEFAULT_LOGIN_URL


def test_rejects_relative_login_url(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", 'portal:\n  login_url: "services/login"\n')
    with pytest.raises(ValidationError):
        load_config(cfg_path)


def test_rejects_zero_captcha_attempts(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", "captcha:\n  max_attempts: 0\n")
    with pytest.raises(ValidationError):
        load_config(cfg_path)
