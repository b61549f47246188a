from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from gstr2b_automation.config import CaptchaConfig
from gstr2b_automation.portal.captcha import (
    AntiCaptchaProvider,
    CaptchaResolver,
    OcrSpaceProvider,
    ProviderReply,
    TrueCaptchaProvider,
    build_resolver,
    is_quota_error,
    is_valid_code,
    normalize_candidate,
)


class _ScriptedProvider:
    def __init__(self, name: str, replies: list[ProviderReply]) -> None:
        self.name = name
        self.replies = list(replies)
        self.calls = 0

    def solve(self, image: bytes) -> ProviderReply:
        self.calls += 1
        if not self.replies:
            return ProviderReply(error="no scripted reply")
        return self.replies.pop(0)


class _FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code
        self.ok = 200 <= status_code < 300

    def json(self) -> Any:
        return self._payload

    def raise_for_status(self) -> None:
        if not self.ok:
            raise RuntimeError(f"HTTP {self.status_code}")


class _FakeSession:
    def __init__(self, responses: list[_FakeResponse]) -> None:
        self.responses = list(responses)
        self.posts: list[tuple[str, dict]] = []

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.posts.append((url, kwargs))
        return self.responses.pop(0)


@pytest.mark.parametrize(
    "msg",
    ["Usage limit reached", "Quota Exceeded for user", "insufficient balance", "API key expired"],
)
def test_quota_messages_detected(msg: str) -> None:
    assert is_quota_error(msg)


def test_non_quota_messages_not_detected() -> None:
    assert not is_quota_error("timeout")
    assert not is_quota_error(None)


def test_candidate_normalization_and_validation() -> None:
    assert normalize_candidate(" ab-12 c\n") == "AB12C"
    assert is_valid_code("AB12C")
    assert not is_valid_code("AB1")
    assert not is_valid_code("A" * 11)
    assert not is_valid_code("")


def test_primary_quota_stops_chain_without_fallbacks() -> None:
    primary = _ScriptedProvider("primary", [ProviderReply(error="quota exceeded", quota_exhausted=True)])
    secondary = _ScriptedProvider("secondary", [ProviderReply(text="ABCD12")])
    free = _ScriptedProvider("free", [ProviderReply(text="ABCD12")])
    resolver = CaptchaResolver(primary=primary, fallbacks=[secondary, free], max_attempts=3)

    refreshes: list[int] = []
    out = resolver.resolve_with(lambda: b"img", lambda: refreshes.append(1))

    assert out.quota_exhausted is True
    assert out.code == ""
    assert primary.calls == 1
    assert secondary.calls == 0
    assert free.calls == 0
    assert refreshes == []


def test_transient_primary_error_falls_through_to_fallback() -> None:
    primary = _ScriptedProvider("primary", [ProviderReply(error="HTTP 502")])
    free = _ScriptedProvider("free", [ProviderReply(text="x7k 9p")])
    resolver = CaptchaResolver(primary=primary, fallbacks=[free], max_attempts=3)

    out = resolver.resolve_with(lambda: b"img", lambda: None)

    assert out.code == "X7K9P"
    assert out.quota_exhausted is False
    assert out.attempts[-1].strategy == "free"
    assert out.attempts[-1].valid is True


def test_invalid_candidate_is_rejected_and_captcha_refreshed() -> None:
    primary = _ScriptedProvider(
        "primary",
        [ProviderReply(text="ab"), ProviderReply(text="GOOD12")],
    )
    resolver = CaptchaResolver(primary=primary, fallbacks=[], max_attempts=3)

    refreshes: list[int] = []
    out = resolver.resolve_with(lambda: b"img", lambda: refreshes.append(1))

    assert out.code == "GOOD12"
    assert len(refreshes) == 1
    assert [a.valid for a in out.attempts] == [False, True]


def test_gives_up_after_max_attempts() -> None:
    primary = _ScriptedProvider("primary", [])
    fallback = _ScriptedProvider("free", [])
    resolver = CaptchaResolver(primary=primary, fallbacks=[fallback], max_attempts=3)

    refreshes: list[int] = []
    out = resolver.resolve_with(lambda: b"img", lambda: refreshes.append(1))

    assert out.code == ""
    assert out.quota_exhausted is False
    assert primary.calls == 3
    assert fallback.calls == 3
    assert len(refreshes) == 3


def test_missing_image_counts_as_attempt() -> None:
    primary = _ScriptedProvider("primary", [ProviderReply(text="ABCD")])
    images: list[Optional[bytes]] = [None, b"img"]
    resolver = CaptchaResolver(primary=primary, max_attempts=3)

    out = resolver.resolve_with(lambda: images.pop(0), lambda: None)

    assert out.code == "ABCD"
    assert primary.calls == 1


def test_samples_saved_when_configured(tmp_path: Path) -> None:
    primary = _ScriptedProvider("primary", [ProviderReply(text="ABCD")])
    resolver = CaptchaResolver(primary=primary, samples_dir=str(tmp_path / "samples"))

    resolver.resolve_with(lambda: b"png-bytes", lambda: None)

    assert (tmp_path / "samples" / "captcha-1.png").read_bytes() == b"png-bytes"


def test_truecaptcha_success_and_quota_reply() -> None:
    session = _FakeSession(
        [
            _FakeResponse({"result": "Ab12Cd"}),
            _FakeResponse({"error_message": "Usage limit exceeded for this month"}),
        ]
    )
    provider = TrueCaptchaProvider(userid="u", apikey="k", session=session)  # type: ignore[arg-type]

    ok = provider.solve(b"img")
    assert ok.text == "Ab12Cd"
    url, kwargs = session.posts[0]
    assert url.endswith("/one/gettext")
    assert kwargs["json"]["userid"] == "u"
    assert kwargs["json"]["data"] == "aW1n"

    bad = provider.solve(b"img")
    assert bad.quota_exhausted is True
    assert "Usage limit" in bad.error


def test_truecaptcha_without_credentials_makes_no_request() -> None:
    session = _FakeSession([])
    provider = TrueCaptchaProvider(userid="", apikey="", session=session)  # type: ignore[arg-type]
    reply = provider.solve(b"img")
    assert reply.error
    assert reply.quota_exhausted is False
    assert session.posts == []


def test_anticaptcha_polls_until_ready() -> None:
    session = _FakeSession(
        [
            _FakeResponse({"errorId": 0, "taskId": 42}),
            _FakeResponse({"errorId": 0, "status": "processing"}),
            _FakeResponse({"errorId": 0, "status": "ready", "solution": {"text": "ZX81"}}),
        ]
    )
    sleeps: list[float] = []
    provider = AntiCaptchaProvider(api_key="k", session=session, sleep=sleeps.append)  # type: ignore[arg-type]

    reply = provider.solve(b"img")

    assert reply.text == "ZX81"
    assert len(sleeps) == 2
    assert session.posts[1][1]["json"] == {"clientKey": "k", "taskId": 42}


def test_anticaptcha_zero_balance_is_quota() -> None:
    session = _FakeSession(
        [_FakeResponse({"errorId": 10, "errorCode": "ERROR_ZERO_BALANCE", "errorDescription": "Insufficient balance"})]
    )
    provider = AntiCaptchaProvider(api_key="k", session=session, sleep=lambda s: None)  # type: ignore[arg-type]
    assert provider.solve(b"img").quota_exhausted is True


def test_ocrspace_parses_text_and_errors() -> None:
    session = _FakeSession(
        [
            _FakeResponse({"ParsedResults": [{"ParsedText": "QW12\r\n"}], "IsErroredOnProcessing": False}),
            _FakeResponse({"IsErroredOnProcessing": True, "ErrorMessage": ["File failed validation"]}),
        ]
    )
    provider = OcrSpaceProvider(session=session)  # type: ignore[arg-type]

    assert provider.solve(b"img").text == "QW12\r\n"
    assert session.posts[0][1]["headers"] == {"apikey": "helloworld"}
    assert "file" in session.posts[0][1]["files"]

    failed = provider.solve(b"img")
    assert failed.text == ""
    assert "File failed validation" in failed.error


def test_build_resolver_orders_fallbacks() -> None:
    without_anti = build_resolver(CaptchaConfig(truecaptcha_userid="u", truecaptcha_apikey="k"))
    assert without_anti.primary.name == "truecaptcha"
    assert [p.name for p in without_anti.fallbacks] == ["ocrspace"]

    with_anti = build_resolver(CaptchaConfig(anticaptcha_api_key="a"))
    assert [p.name for p in with_anti.fallbacks] == ["anticaptcha", "ocrspace"]
