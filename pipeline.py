#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Security pipeline applied to every HTTP request

Order (SessionMiddleware wraps this middleware, so the session cookie is
already decoded when we run):

    session id -> security headers -> sanitize input -> rate limit -> CSRF -> app

Authentication is a route dependency and therefore runs after all of the
above. Outgoing JSON and plain-text bodies are XSS-escaped on the way out.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import MutableHeaders

from errors import CsrfInvalid, MarketplaceError, RateLimited, ValidationError, error_response
from security import (
    CSRF_FORM_FIELD,
    CSRF_HEADERS,
    CsrfTokenService,
    SlidingWindowRateLimiter,
    client_identity,
    escape_output,
    requires_csrf,
    sanitize_payload,
    security_headers,
    strip_html,
)

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "sid"
MAX_BODY_BYTES = 10 * 1024 * 1024
BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
OUTBOUND_EXEMPT_PATHS = ("/openapi.json", "/openapi.yaml", "/docs", "/redoc")


def _header(scope: Dict[str, Any], name: str) -> str:
    target = name.lower().encode("latin-1")
    for key, value in scope.get("headers", []):
        if key.lower() == target:
            return value.decode("latin-1")
    return ""


def _is_json(content_type: str) -> bool:
    ct = content_type.split(";", 1)[0].strip().lower()
    return ct == "application/json" or ct.endswith("+json")


def _is_form(content_type: str) -> bool:
    return content_type.split(";", 1)[0].strip().lower() == "application/x-www-form-urlencoded"


def session_id_from_scope(scope: Dict[str, Any]) -> Optional[str]:
    session = scope.get("session")
    if isinstance(session, dict):
        sid = session.get(SESSION_ID_KEY)
        return sid if isinstance(sid, str) and sid else None
    return None


def _reject_non_finite(constant: str):
    raise ValidationError(f"{constant} is not a valid JSON number")


class _BodyTooLarge(Exception):
    pass


class SecurityPipeline:
    def __init__(
        self,
        app,
        csrf_service: CsrfTokenService,
        auth_limiter: SlidingWindowRateLimiter,
        api_limiter: SlidingWindowRateLimiter,
        csrf_enabled: bool = True,
        auth_prefixes: Iterable[str] = ("/auth/",),
        api_prefixes: Iterable[str] = ("/api/products", "/api/users", "/api/inquiries"),
    ):
        self.app = app
        self.csrf_service = csrf_service
        self.auth_limiter = auth_limiter
        self.api_limiter = api_limiter
        self.csrf_enabled = csrf_enabled
        self.auth_prefixes = tuple(auth_prefixes)
        self.api_prefixes = tuple(api_prefixes)

    def limiter_for(self, path: str) -> Optional[SlidingWindowRateLimiter]:
        if path.startswith(self.auth_prefixes):
            return self.auth_limiter
        if path.startswith(self.api_prefixes):
            return self.api_limiter
        return None

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope = dict(scope)
        path = scope.get("path", "")
        method = scope.get("method", "GET").upper()
        client_key = client_identity(scope)

        session_id = session_id_from_scope(scope)
        state = dict(scope.get("state") or {})
        state["session_id"] = session_id
        scope["state"] = state

        limiter = self.limiter_for(path)
        extra_headers: Dict[str, str] = dict(security_headers())
        status_holder = {"status": 500}
        send = self._wrap_send(send, path, extra_headers, status_holder)

        try:
            scope["query_string"] = self._sanitize_query(scope.get("query_string", b""))
            body, parsed = b"", None
            if method in BODY_METHODS:
                body, parsed = await self._read_and_sanitize_body(scope, receive)

            if limiter is not None:
                allowed, retry_after, remaining = limiter.check(client_key)
                if not allowed:
                    logger.warning(
                        "Blocked request due to rate limit. class=%s method=%s path=%s retry_after=%s",
                        limiter.name, method, path, retry_after,
                        extra={"event": "rate_limit_blocked", "limiter": limiter.name, "path": path},
                    )
                    raise RateLimited(retry_after=retry_after)
                extra_headers["RateLimit-Limit"] = str(limiter.max_requests)
                extra_headers["RateLimit-Remaining"] = str(remaining)

            if self.csrf_enabled and requires_csrf(method, path):
                self._check_csrf(scope, session_id, parsed, method, path)
        except MarketplaceError as exc:
            await error_response(exc)(scope, receive, send)
            if limiter is not None and limiter.count_only_failures and not isinstance(exc, RateLimited):
                limiter.hit(client_key)
            return
        except _BodyTooLarge:
            response = error_response(ValidationError("Request body too large"))
            response.status_code = 413
            await response(scope, receive, send)
            return

        if method in BODY_METHODS:
            receive = self._replay(body, receive)

        try:
            await self.app(scope, receive, send)
        finally:
            if limiter is not None and limiter.count_only_failures and status_holder["status"] >= 400:
                limiter.hit(client_key)

    # ------------------------------------------------------------------ input

    def _sanitize_query(self, raw: bytes) -> bytes:
        if not raw:
            return raw
        pairs = parse_qsl(raw.decode("latin-1"), keep_blank_values=True)
        cleaned = [(k, v if k == CSRF_FORM_FIELD else strip_html(v)) for k, v in pairs]
        return urlencode(cleaned).encode("latin-1")

    async def _read_body(self, receive) -> bytes:
        chunks: List[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > MAX_BODY_BYTES:
                raise _BodyTooLarge()
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks)

    async def _read_and_sanitize_body(self, scope, receive) -> Tuple[bytes, Any]:
        body = await self._read_body(receive)
        if not body:
            return body, None
        content_type = _header(scope, "content-type")
        if _is_json(content_type):
            try:
                parsed = json.loads(body, parse_constant=_reject_non_finite)
            except ValueError:
                raise ValidationError("Invalid JSON format")
            parsed = sanitize_payload(parsed, strip_html)
            body = json.dumps(parsed, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
            self._set_content_length(scope, len(body))
            return body, parsed
        if _is_form(content_type):
            pairs = parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)
            cleaned = [(k, v if k == CSRF_FORM_FIELD else strip_html(v)) for k, v in pairs]
            body = urlencode(cleaned).encode("utf-8")
            self._set_content_length(scope, len(body))
            return body, dict(cleaned)
        return body, None

    @staticmethod
    def _set_content_length(scope, length: int) -> None:
        headers = MutableHeaders(scope=scope)
        headers["content-length"] = str(length)

    @staticmethod
    def _replay(body: bytes, receive):
        sent = {"done": False}

        async def _receive():
            if not sent["done"]:
                sent["done"] = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return _receive

    # ------------------------------------------------------------------- CSRF

    def _check_csrf(self, scope, session_id: Optional[str], parsed: Any, method: str, path: str) -> None:
        token = ""
        for name in CSRF_HEADERS:
            token = _header(scope, name).strip()
            if token:
                break
        if not token and isinstance(parsed, dict):
            value = parsed.get(CSRF_FORM_FIELD)
            token = value.strip() if isinstance(value, str) else ""

        if not token:
            reason = "missing_token"
        elif not self.csrf_service.verify(self.csrf_service.get_secret(session_id), token):
            reason = "invalid_token"
        else:
            return

        logger.warning(
            "Blocked write request due to CSRF check. reason=%s method=%s path=%s has_session=%s",
            reason, method, path, bool(session_id),
            extra={"event": "csrf_validation_failed", "reason": reason, "path": path},
        )
        raise CsrfInvalid()

    # ----------------------------------------------------------------- output

    def _wrap_send(self, send, path: str, extra_headers: Dict[str, str], status_holder: Dict[str, int]):
        escape = not path.startswith(OUTBOUND_EXEMPT_PATHS)
        pending: Dict[str, Any] = {"start": None, "chunks": [], "kind": None}

        async def _send(message):
            if message["type"] == "http.response.start":
                status_holder["status"] = message["status"]
                headers = MutableHeaders(scope=message)
                for key, value in extra_headers.items():
                    if key not in headers:
                        headers[key] = value
                content_type = headers.get("content-type", "")
                if escape and _is_json(content_type):
                    pending["kind"] = "json"
                elif escape and content_type.startswith("text/plain"):
                    pending["kind"] = "text"
                if pending["kind"]:
                    pending["start"] = message
                    return
                await send(message)
                return

            if message["type"] == "http.response.body" and pending["start"] is not None:
                pending["chunks"].append(message.get("body", b""))
                if message.get("more_body", False):
                    return
                body = self._escape_body(b"".join(pending["chunks"]), pending["kind"])
                start = pending["start"]
                pending["start"] = None
                MutableHeaders(scope=start)["content-length"] = str(len(body))
                await send(start)
                await send({"type": "http.response.body", "body": body, "more_body": False})
                return

            await send(message)

        return _send

    @staticmethod
    def _escape_body(body: bytes, kind: str) -> bytes:
        if not body:
            return body
        if kind == "json":
            try:
                data = json.loads(body)
            except ValueError:
                return body
            data = sanitize_payload(data, escape_output, skip_keys=())
            return json.dumps(data, ensure_ascii=False, allow_nan=False, separators=(",", ":")).encode("utf-8")
        return escape_output(body.decode("utf-8", errors="replace")).encode("utf-8")
