#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Unit tests for the request security primitives (security.py)

Run with: pytest tests/test_security.py -v
"""

import pytest

from security import (
    CsrfTokenService,
    MemoryStateStore,
    SlidingWindowRateLimiter,
    csrf_exempt,
    escape_output,
    requires_csrf,
    sanitize_payload,
    strip_html,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ---------------------------------------------------------------------------
# Anti-forgery tokens
# ---------------------------------------------------------------------------

class TestCsrfTokenService:
    def test_ensure_secret_is_stable_per_session(self):
        service = CsrfTokenService(MemoryStateStore())
        secret, is_new = service.ensure_secret("session-a")
        again, is_new_again = service.ensure_secret("session-a")
        assert is_new is True
        assert is_new_again is False
        assert again == secret
        assert service.get_secret("session-a") == secret

    def test_tokens_are_reusable_and_many_coexist(self):
        service = CsrfTokenService(MemoryStateStore())
        secret, _ = service.ensure_secret("s")
        first, second = service.create_token(secret), service.create_token(secret)
        assert first != second
        assert service.verify(secret, first)
        assert service.verify(secret, first)
        assert service.verify(secret, second)

    def test_token_from_other_session_fails(self):
        service = CsrfTokenService(MemoryStateStore())
        s1, _ = service.ensure_secret("one")
        s2, _ = service.ensure_secret("two")
        assert s1 != s2
        assert not service.verify(s2, service.create_token(s1))

    @pytest.mark.parametrize("token", ["", None, "no-dot", ".sig", "salt.", "salt.AAAA", 12345])
    def test_malformed_tokens_fail(self, token):
        service = CsrfTokenService(MemoryStateStore())
        secret, _ = service.ensure_secret("s")
        assert not service.verify(secret, token)

    def test_tampered_signature_fails(self):
        service = CsrfTokenService(MemoryStateStore())
        secret, _ = service.ensure_secret("s")
        salt, _, sig = service.create_token(secret).partition(".")
        flipped = ("A" if sig[0] != "A" else "B") + sig[1:]
        assert not service.verify(secret, f"{salt}.{flipped}")

    def test_missing_secret_never_verifies(self):
        service = CsrfTokenService(MemoryStateStore())
        assert service.get_secret(None) is None
        assert not service.verify(None, "abc.def")

    def test_token_does_not_contain_secret(self):
        service = CsrfTokenService(MemoryStateStore())
        secret, _ = service.ensure_secret("s")
        assert secret not in service.create_token(secret)

    def test_drop_secret(self):
        service = CsrfTokenService(MemoryStateStore())
        service.ensure_secret("s")
        service.drop_secret("s")
        assert service.get_secret("s") is None


class TestCsrfExemptions:
    @pytest.mark.parametrize(
        "path",
        ["/auth/register", "/auth/login", "/auth/refresh", "/api/health", "/api/csrf-token", "/api/debug/session"],
    )
    def test_exempt(self, path):
        assert csrf_exempt(path)
        assert not requires_csrf("POST", path)

    @pytest.mark.parametrize("path", ["/auth/logout", "/api/inquiries", "/api/users/profile", "/api/products/x"])
    def test_protected(self, path):
        assert not csrf_exempt(path)
        for method in ("POST", "PUT", "PATCH", "DELETE", "patch"):
            assert requires_csrf(method, path)

    def test_safe_methods_never_checked(self):
        for method in ("GET", "HEAD", "OPTIONS"):
            assert not requires_csrf(method, "/api/inquiries")


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------

SAMPLES = [
    "plain text",
    "  padded  ",
    "<b>M8</b> hex bolts",
    "<script>alert(1)</script>hello",
    "&lt;script&gt;alert(1)&lt;/script&gt;",
    "&amp;lt;b&amp;gt;",
    "5 < 6 and 7 > 3",
    "Tom & Jerry's <i>gears</i>",
    "<<b>>nested<</b>>",
    "&amp;&amp;&amp;",
    "参数: 6204-2RS <br/> 轴承",
    "&amp;amp;amp;amp;amp;amp;amp;lt;b&amp;amp;amp;amp;amp;amp;amp;gt;bolt",
    "&amp;" * 12 + "lt;script" + "&amp;" * 12 + "gt;x",
]


class TestSanitizers:
    def test_strip_html_removes_markup(self):
        assert strip_html("<b>M8</b> hex bolts ") == "M8 hex bolts"
        assert "<" not in strip_html("<img src=x onerror=alert(1)>")
        assert strip_html("&lt;script&gt;x") == "scriptx"

    def test_strip_html_decodes_deeply_nested_entities(self):
        nested = "&amp;amp;amp;amp;amp;amp;amp;lt;b&amp;amp;amp;amp;amp;amp;amp;gt;bolt"
        assert strip_html(nested) == "bbolt"

    @pytest.mark.parametrize("value", SAMPLES)
    def test_strip_html_is_idempotent(self, value):
        once = strip_html(value)
        assert strip_html(once) == once

    def test_escape_output(self):
        assert escape_output("<b>&</b>") == "&lt;b&gt;&amp;&lt;/b&gt;"
        assert escape_output("it's \"quoted\"") == "it's \"quoted\""

    @pytest.mark.parametrize("value", SAMPLES)
    def test_escape_output_is_idempotent(self, value):
        once = escape_output(value)
        assert escape_output(once) == once

    def test_sanitize_payload_recurses_and_skips_csrf(self):
        payload = {
            "message": "<i>hi</i> there",
            "_csrf": "abc<def>",
            "nested": {"list": ["<b>x</b>", 3, None, True]},
        }
        cleaned = sanitize_payload(payload)
        assert cleaned == {
            "message": "hi there",
            "_csrf": "abc<def>",
            "nested": {"list": ["x", 3, None, True]},
        }


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class TestSlidingWindowRateLimiter:
    def _limiter(self, clock, **kwargs):
        return SlidingWindowRateLimiter("test", MemoryStateStore(clock=clock), 3, 60, clock=clock, **kwargs)

    def test_n_plus_one_rejected(self):
        clock = FakeClock()
        limiter = self._limiter(clock)
        results = [limiter.check("ip:1") for _ in range(4)]
        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert [remaining for _, _, remaining in results[:3]] == [2, 1, 0]
        assert results[3][1] == 60

    def test_window_rolls(self):
        clock = FakeClock()
        limiter = self._limiter(clock)
        limiter.check("ip:1")
        clock.advance(30)
        limiter.check("ip:1")
        limiter.check("ip:1")
        allowed, retry_after, _ = limiter.check("ip:1")
        assert not allowed
        assert retry_after == 30

        # The first hit ages out; the later two still count
        clock.advance(30)
        assert limiter.check("ip:1")[0] is True
        assert limiter.check("ip:1")[0] is False

        clock.advance(60)
        assert limiter.check("ip:1")[0] is True

    def test_clients_are_independent(self):
        clock = FakeClock()
        limiter = self._limiter(clock)
        for _ in range(3):
            limiter.check("ip:1")
        assert limiter.check("ip:1")[0] is False
        assert limiter.check("ip:2")[0] is True

    def test_count_only_failures(self):
        clock = FakeClock()
        limiter = self._limiter(clock, count_only_failures=True)
        for _ in range(10):
            assert limiter.check("ip:1")[0] is True
        for _ in range(3):
            limiter.hit("ip:1")
        allowed, retry_after, remaining = limiter.check("ip:1")
        assert not allowed
        assert remaining == 0
        assert retry_after == 60

    def test_disabled_and_reset(self):
        clock = FakeClock()
        disabled = self._limiter(clock, enabled=False)
        assert all(disabled.check("ip:1")[0] for _ in range(10))

        limiter = self._limiter(clock)
        for _ in range(3):
            limiter.check("ip:1")
        limiter.reset("ip:1")
        assert limiter.check("ip:1")[0] is True


class TestMemoryStateStore:
    def test_setdefault_first_write_wins(self):
        store = MemoryStateStore()
        assert store.setdefault("k", "a") == ("a", True)
        assert store.setdefault("k", "b") == ("a", False)
        assert store.get("k") == "a"

    def test_ttl_expiry_and_gc(self):
        clock = FakeClock()
        store = MemoryStateStore(ttl_seconds=10, clock=clock)
        store.setdefault("k", "v")
        clock.advance(11)
        assert store.get("k") is None
        assert store.setdefault("k", "w") == ("w", True)
        clock.advance(11)
        assert store.gc() == 1
        assert len(store) == 0

    def test_expired_keys_swept_without_explicit_gc(self):
        clock = FakeClock()
        store = MemoryStateStore(ttl_seconds=10, clock=clock, gc_every=3)
        store.setdefault("old", "v")
        clock.advance(11)
        store.setdefault("a", "v")
        assert len(store) == 2
        store.update("b", lambda v: 1)
        assert len(store) == 2
        assert store.get("old") is None

    def test_trim_prefers_expired_keys(self):
        clock = FakeClock()
        store = MemoryStateStore(ttl_seconds=10, max_keys=2, clock=clock)
        store.setdefault("stale", 1)
        clock.advance(5)
        store.setdefault("live", 2)
        clock.advance(6)
        store.get("live")
        store.setdefault("new", 3)
        assert len(store) == 2
        assert store.get("live") == 2
        assert store.get("new") == 3

    def test_update_and_trim(self):
        clock = FakeClock()
        store = MemoryStateStore(max_keys=2, clock=clock)
        assert store.update("a", lambda v: (v or 0) + 1) == 1
        assert store.update("a", lambda v: (v or 0) + 1) == 2
        clock.advance(1)
        store.update("b", lambda v: 1)
        clock.advance(1)
        store.update("c", lambda v: 1)
        assert len(store) == 2
        assert store.get("a") is None
