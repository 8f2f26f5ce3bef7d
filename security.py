#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Request security primitives for the Industrial Marketplace

Features:
- StateStore: injected process-local key/value store for session and
  rate-limit bookkeeping (swap for a shared store without touching callers)
- CsrfTokenService: per-session secret + stateless HMAC tokens
- strip_html / escape_output: idempotent inbound and outbound sanitizers
- SlidingWindowRateLimiter: rolling-window request log per client key
- CSRF exemption rules and default security headers

Usage:
    store = MemoryStateStore(ttl_seconds=86400)
    csrf = CsrfTokenService(store)
    secret, is_new = csrf.ensure_secret(session_id)
    token = csrf.create_token(secret)
    assert csrf.verify(secret, token)
"""

import base64
import hashlib
import hmac
import html
import logging
import math
import re
import secrets
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import bleach

from config import IS_PRODUCTION

logger = logging.getLogger(__name__)

CSRF_HEADERS = ("x-csrf-token", "x-xsrf-token")
CSRF_FORM_FIELD = "_csrf"
UNSAFE_HTTP_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Pre-authentication endpoints that never carry a token
CSRF_EXEMPT_PATHS = frozenset({
    "/auth/register",
    "/auth/login",
    "/api/health",
    "/api/csrf-token",
    "/api/debug/session",
})
AUTH_PREFIX = "/auth/"
AUTH_LOGOUT_PATH = "/auth/logout"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "base-uri 'self'; "
    "frame-ancestors 'none'; "
    "object-src 'none'; "
    "img-src 'self' data: https:; "
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
    "font-src 'self' https://fonts.gstatic.com; "
    "script-src 'self' 'unsafe-inline'; "
    "connect-src 'self'; "
    "form-action 'self'"
)


def security_headers() -> Dict[str, str]:
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Cross-Origin-Resource-Policy": "same-site",
        "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    }
    if IS_PRODUCTION:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
    return headers


# ============================================================================
# STATE STORE
# ============================================================================

class StateStore:
    """
    Key/value store holding per-session and per-client security state.

    Implementations must make setdefault and update atomic with respect to
    each other; values are opaque to the store.
    """

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def setdefault(self, key: str, value: Any) -> Tuple[Any, bool]:
        """Store value unless key exists. Returns (stored_value, inserted)."""
        raise NotImplementedError

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically replace the value with fn(current_or_None) and return it."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def gc(self) -> int:
        return 0


class MemoryStateStore(StateStore):
    """In-process store; contents are lost on restart."""

    def __init__(self, ttl_seconds: Optional[int] = None, max_keys: int = 100_000,
                 clock: Callable[[], float] = time.monotonic, gc_every: int = 1000):
        self._data: Dict[str, Any] = {}
        self._touched: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_keys = max_keys
        self._clock = clock
        # Expired keys are swept once every gc_every writes
        self._gc_every = max(1, gc_every)
        self._writes = 0

    def _expired_locked(self, key: str, now: float) -> bool:
        if self._ttl is None:
            return False
        touched = self._touched.get(key)
        return touched is not None and (now - touched) > self._ttl

    def get(self, key, default=None):
        with self._lock:
            now = self._clock()
            if key not in self._data or self._expired_locked(key, now):
                return default
            self._touched[key] = now
            return self._data[key]

    def setdefault(self, key, value):
        with self._lock:
            now = self._clock()
            if key in self._data and not self._expired_locked(key, now):
                self._touched[key] = now
                return self._data[key], False
            self._data[key] = value
            self._touched[key] = now
            self._after_write_locked(now)
            return value, True

    def update(self, key, fn):
        with self._lock:
            now = self._clock()
            current = None if self._expired_locked(key, now) else self._data.get(key)
            value = fn(current)
            self._data[key] = value
            self._touched[key] = now
            self._after_write_locked(now)
            return value

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)
            self._touched.pop(key, None)

    def clear(self):
        with self._lock:
            self._data.clear()
            self._touched.clear()

    def gc(self) -> int:
        with self._lock:
            return self._gc_locked(self._clock())

    def _gc_locked(self, now: float) -> int:
        if self._ttl is None:
            return 0
        expired = [k for k in self._data if self._expired_locked(k, now)]
        for k in expired:
            self._data.pop(k, None)
            self._touched.pop(k, None)
        return len(expired)

    def _after_write_locked(self, now: float) -> None:
        self._writes += 1
        if self._writes % self._gc_every == 0:
            self._gc_locked(now)
        self._trim_locked(now)

    def _trim_locked(self, now: float) -> None:
        if len(self._data) <= self._max_keys:
            return
        # Expired entries go first; live ones are evicted oldest-first only if still over
        self._gc_locked(now)
        excess = len(self._data) - self._max_keys
        if excess <= 0:
            return
        for k, _ in sorted(self._touched.items(), key=lambda kv: kv[1])[:excess]:
            self._data.pop(k, None)
            self._touched.pop(k, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ============================================================================
# ANTI-FORGERY TOKENS
# ============================================================================

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class CsrfTokenService:
    """
    Session-bound anti-forgery tokens.

    The only stored state is one secret per session. A token is
    "<salt>.<HMAC-SHA256(secret, salt)>" with a fresh salt each time, so any
    number of tokens stay valid for the session's lifetime and a token minted
    under one secret never verifies under another.
    """

    key_prefix = "csrf:"
    salt_length = 8

    def __init__(self, store: StateStore):
        self.store = store

    @staticmethod
    def generate_secret() -> str:
        return secrets.token_urlsafe(24)

    def get_secret(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id:
            return None
        return self.store.get(self.key_prefix + session_id)

    def ensure_secret(self, session_id: str) -> Tuple[str, bool]:
        """Return (secret, is_new); concurrent first writes settle on one secret."""
        secret, inserted = self.store.setdefault(self.key_prefix + session_id, self.generate_secret())
        if inserted:
            logger.info("Generated CSRF secret for new session", extra={"event": "csrf_secret_created"})
        return secret, inserted

    def drop_secret(self, session_id: str) -> None:
        self.store.delete(self.key_prefix + session_id)

    def _sign(self, secret: str, salt: str) -> str:
        digest = hmac.new(secret.encode("utf-8"), salt.encode("utf-8"), hashlib.sha256).digest()
        return _b64url(digest)

    def create_token(self, secret: str) -> str:
        salt = secrets.token_urlsafe(self.salt_length)[: self.salt_length]
        return f"{salt}.{self._sign(secret, salt)}"

    def verify(self, secret: Optional[str], token: Optional[str]) -> bool:
        if not secret or not token or not isinstance(token, str):
            return False
        salt, sep, signature = token.partition(".")
        if not sep or not salt or not signature:
            return False
        return hmac.compare_digest(signature, self._sign(secret, salt))


def csrf_exempt(path: str) -> bool:
    """
    Whether a mutating request to path skips token validation.

    The auth namespace is exempt except logout, which ends an authenticated
    session and is therefore protected.
    """
    if path in CSRF_EXEMPT_PATHS:
        return True
    return path.startswith(AUTH_PREFIX) and path != AUTH_LOGOUT_PATH


def requires_csrf(method: str, path: str) -> bool:
    return str(method or "").upper() in UNSAFE_HTTP_METHODS and not csrf_exempt(path)


# ============================================================================
# SANITIZATION
# ============================================================================

_ANGLE_BRACKETS = re.compile(r"[<>]")


def _strip_once(value: str) -> str:
    cleaned = bleach.clean(value, tags=set(), attributes={}, strip=True, strip_comments=True)
    return _ANGLE_BRACKETS.sub("", html.unescape(cleaned)).strip()


def strip_html(value: str) -> str:
    """
    Inbound filter: remove all markup from a string.

    Tags are stripped by bleach, entities are decoded back to text and any
    remaining angle brackets are dropped. The pass repeats until the text
    stops changing, so feeding the output back in returns it unchanged.

    Example:
        >>> strip_html("<b>M8</b> hex bolts ")
        'M8 hex bolts'
    """
    # A pass never lengthens the text, so this reaches a fixed point
    current = value
    while True:
        cleaned = _strip_once(current)
        if cleaned == current:
            return current
        current = cleaned


def escape_output(value: str) -> str:
    """
    Outbound filter: HTML-escape &, < and >.

    Existing entities are decoded first, so already-escaped text is not
    escaped a second time.
    """
    return html.escape(html.unescape(value), quote=False)


def sanitize_payload(data: Any, fn: Callable[[str], str] = strip_html, skip_keys=(CSRF_FORM_FIELD,)) -> Any:
    """Apply fn to every string inside nested dicts/lists, leaving skip_keys untouched."""
    if isinstance(data, str):
        return fn(data)
    if isinstance(data, list):
        return [sanitize_payload(item, fn, skip_keys) for item in data]
    if isinstance(data, dict):
        return {
            key: value if key in skip_keys else sanitize_payload(value, fn, skip_keys)
            for key, value in data.items()
        }
    return data


# ============================================================================
# RATE LIMITING
# ============================================================================

class SlidingWindowRateLimiter:
    """
    Rolling-window request log per client key.

    A request is admitted while fewer than max_requests hits lie within the
    trailing window_seconds. Hits age out individually, so there are no
    fixed-clock boundaries.

    With count_only_failures=True, check() does not record anything and the
    caller records a hit via hit() once the response turns out to be a
    failure (successful requests are excluded from the count).
    """

    def __init__(self, name: str, store: StateStore, max_requests: int, window_seconds: int,
                 enabled: bool = True, count_only_failures: bool = False,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.store = store
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1, int(window_seconds))
        self.enabled = enabled
        self.count_only_failures = count_only_failures
        self.clock = clock

    def _key(self, client_key: str) -> str:
        return f"ratelimit:{self.name}:{client_key or 'anonymous'}"

    def _prune(self, samples: Optional[Deque[float]], now: float) -> Deque[float]:
        samples = samples if samples is not None else deque()
        cutoff = now - float(self.window_seconds)
        while samples and samples[0] <= cutoff:
            samples.popleft()
        return samples

    def check(self, client_key: str) -> Tuple[bool, int, int]:
        """
        Decide whether a request may proceed.

        Returns:
            (allowed, retry_after_seconds, remaining)
        """
        if not self.enabled:
            return True, 0, self.max_requests
        now = self.clock()
        decision = {}

        def _apply(samples):
            samples = self._prune(samples, now)
            if len(samples) >= self.max_requests:
                decision["allowed"] = False
                decision["retry_after"] = max(1, math.ceil(samples[0] + self.window_seconds - now))
            else:
                decision["allowed"] = True
                if not self.count_only_failures:
                    samples.append(now)
            decision["remaining"] = max(0, self.max_requests - len(samples))
            return samples

        self.store.update(self._key(client_key), _apply)
        return decision["allowed"], decision.get("retry_after", 0), decision["remaining"]

    def hit(self, client_key: str) -> None:
        if not self.enabled:
            return
        now = self.clock()

        def _append(samples):
            samples = self._prune(samples, now)
            samples.append(now)
            return samples

        self.store.update(self._key(client_key), _append)

    def reset(self, client_key: Optional[str] = None) -> None:
        if client_key is None:
            self.store.clear()
        else:
            self.store.delete(self._key(client_key))


def client_identity(scope: Dict[str, Any]) -> str:
    client = scope.get("client")
    host = client[0] if client else ""
    return f"ip:{host}" if host else "ip:unknown"
