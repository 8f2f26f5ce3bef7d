from contextlib import contextmanager

import pytest
import yaml
from fastapi.testclient import TestClient

import config
import main
from conftest import DEFAULT_PASSWORD, auth_headers, bearer, csrf_token, make_user
from models import User

CSRF_REJECTION = {"status": "error", "message": "Security check failed: invalid CSRF token"}


@contextmanager
def patched_limit(limiter, max_requests):
    # Shrink a limiter so tests hit the boundary without hundreds of requests
    prev = limiter.max_requests
    limiter.max_requests = max_requests
    try:
        yield limiter
    finally:
        limiter.max_requests = prev


@contextmanager
def patched_debug_routes(enabled):
    prev = main.DEBUG_ROUTES
    main.DEBUG_ROUTES = enabled
    try:
        yield
    finally:
        main.DEBUG_ROUTES = prev


def get_client():
    return TestClient(main.app)


def register(client, **overrides):
    body = {
        "username": "new_buyer",
        "email": "New.Buyer@Example.com",
        "password": "Secret123",
        "company": "Acme Machining",
        "phone": "13700137000",
        "role": "buyer",
    }
    body.update(overrides)
    return client.post("/auth/register", json=body)


# ---------------------------------------------------------------------------
# Meta endpoints
# ---------------------------------------------------------------------------

def test_health_reports_database():
    client = get_client()
    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "success"
    assert body["data"]["server"] == "running"
    assert body["data"]["database"] == "connected"
    assert body["data"]["uptime"] >= 0


def test_security_headers_on_every_response():
    client = get_client()
    r = client.get("/api/health")
    assert r.headers["x-content-type-options"] == "nosniff"
    assert r.headers["x-frame-options"] == "DENY"
    assert "frame-ancestors 'none'" in r.headers["content-security-policy"]
    assert r.headers["cross-origin-resource-policy"] == "same-site"
    assert "strict-transport-security" not in r.headers


def test_security_info():
    client = get_client()
    data = client.get("/api/security-info").json()["data"]["security"]
    assert data["csrf"] == "enabled"
    assert data["rateLimit"] == "enabled"


def test_openapi_yaml_lists_marketplace_paths():
    client = get_client()
    r = client.get("/openapi.yaml")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/yaml")
    schema = yaml.safe_load(r.text)
    assert "/api/inquiries/{inquiry_id}/respond" in schema["paths"]
    assert "/auth/login" in schema["paths"]


def test_unknown_api_path_is_json_404():
    client = get_client()
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert r.json() == {"status": "error", "message": "API endpoint not found"}


def test_debug_session_hidden_unless_enabled():
    client = get_client()
    with patched_debug_routes(False):
        assert client.get("/api/debug/session").status_code == 404
    with patched_debug_routes(True):
        csrf_token(client)
        data = client.post("/api/debug/session").json()["data"]
        assert data == {"hasSession": True, "hasCsrfSecret": True, "method": "POST"}


def test_test_auth_requires_bearer(db):
    client = get_client()
    assert client.get("/api/test-auth").status_code == 401
    assert client.get("/api/test-auth", headers={"Authorization": "Bearer garbage"}).status_code == 401
    user = make_user(db, "tester")
    r = client.get("/api/test-auth", headers=bearer(user))
    assert r.status_code == 200
    assert r.json()["user"]["id"] == user.id


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------

def test_csrf_token_creates_session():
    client = get_client()
    r = client.get("/api/csrf-token")
    assert r.status_code == 200
    token = r.json()["data"]["csrfToken"]
    salt, _, signature = token.partition(".")
    assert len(salt) == 8 and signature
    assert main.SESSION_COOKIE in client.cookies
    assert len(main.session_store) == 1


def test_mutation_without_token_is_rejected_without_leaking_secret(db):
    client = get_client()
    user = make_user(db, "profile_user")
    token = csrf_token(client)
    secret = next(iter(main.session_store._data.values()))

    r = client.patch("/api/users/profile", json={"company": "Changed Co"}, headers=bearer(user))

    assert r.status_code == 403
    assert r.json() == CSRF_REJECTION
    assert secret not in r.text
    assert token not in r.text
    db.refresh(user)
    assert user.company != "Changed Co"


def test_invalid_and_foreign_tokens_get_the_same_answer(db):
    client = get_client()
    other = get_client()
    user = make_user(db, "profile_user")
    csrf_token(client)
    foreign = csrf_token(other)

    for bad in ("garbage", foreign):
        headers = bearer(user)
        headers["X-CSRF-Token"] = bad
        r = client.patch("/api/users/profile", json={"company": "Changed Co"}, headers=headers)
        assert r.status_code == 403
        assert r.json() == CSRF_REJECTION


def test_token_accepted_from_alternate_header_and_body(db):
    client = get_client()
    user = make_user(db, "profile_user")
    token = csrf_token(client)

    headers = bearer(user)
    headers["X-XSRF-Token"] = token
    assert client.patch("/api/users/profile", json={"company": "Via Header"}, headers=headers).status_code == 200

    r = client.patch("/api/users/profile", json={"company": "Via Body", "_csrf": token}, headers=bearer(user))
    assert r.status_code == 200
    assert r.json()["data"]["user"]["company"] == "Via Body"

    # Tokens are reusable for the session's lifetime
    headers = bearer(user)
    headers["X-CSRF-Token"] = token
    assert client.patch("/api/users/profile", json={"company": "Again"}, headers=headers).status_code == 200


def test_token_without_session_cookie_fails(db):
    client = get_client()
    user = make_user(db, "profile_user")
    token = csrf_token(client)
    client.cookies.clear()
    headers = bearer(user)
    headers["X-CSRF-Token"] = token
    r = client.patch("/api/users/profile", json={"company": "X Co"}, headers=headers)
    assert r.status_code == 403


def test_logout_requires_token_and_drops_secret():
    client = get_client()
    token = csrf_token(client)
    assert client.post("/auth/logout").status_code == 403

    r = client.post("/auth/logout", headers={"X-CSRF-Token": token})
    assert r.status_code == 200
    assert len(main.session_store) == 0


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def test_register_returns_tokens_and_user(db):
    client = get_client()
    r = register(client)
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "success"
    assert body["token"] and body["refreshToken"]
    user = body["data"]["user"]
    assert user["email"] == "new.buyer@example.com"
    assert user["role"] == "buyer"
    assert "password" not in user and "hashed_password" not in user

    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["data"]["user"]["username"] == "new_buyer"


def test_register_conflicts_and_validation(db):
    client = get_client()
    assert register(client).status_code == 201

    dup = register(client, username="new_buyer", email="other@example.com")
    assert dup.status_code == 400
    assert dup.json()["errors"][0]["field"] == "username"

    dup_email = register(client, username="someone_else", email="NEW.BUYER@example.com")
    assert dup_email.status_code == 400
    assert dup_email.json()["errors"][0]["field"] == "email"

    bad = register(client, username="x", email="fresh@example.com", password="weak", role="admin", phone="123")
    assert bad.status_code == 400
    fields = {e["field"] for e in bad.json()["errors"]}
    assert fields == {"username", "password", "role", "phone"}

    for address in ("not-an-email", "two@@example.com", "no-domain@"):
        malformed = register(client, username="fresh_user", email=address)
        assert malformed.status_code == 400
        assert [e["field"] for e in malformed.json()["errors"]] == ["email"]

    missing = client.post("/auth/register", json={"username": "abc"})
    assert missing.status_code == 400
    assert missing.json()["status"] == "error"


def test_login_stamps_last_login(db):
    client = get_client()
    user = make_user(db, "login_user")
    assert user.last_login is None

    r = client.post("/auth/login", json={"email": "LOGIN_USER@example.com", "password": DEFAULT_PASSWORD})
    assert r.status_code == 200
    assert r.json()["token"]
    db.refresh(user)
    assert user.last_login is not None


def test_login_failures(db):
    client = get_client()
    make_user(db, "login_user")
    make_user(db, "disabled_user", is_active=False)

    wrong = client.post("/auth/login", json={"email": "login_user@example.com", "password": "Nope1234"})
    assert wrong.status_code == 401
    unknown = client.post("/auth/login", json={"email": "ghost@example.com", "password": DEFAULT_PASSWORD})
    assert unknown.status_code == 401
    assert unknown.json()["message"] == wrong.json()["message"]
    disabled = client.post("/auth/login", json={"email": "disabled_user@example.com", "password": DEFAULT_PASSWORD})
    assert disabled.status_code == 401
    malformed = client.post("/auth/login", json={"email": "login_user", "password": DEFAULT_PASSWORD})
    assert malformed.status_code == 400
    assert malformed.json()["errors"][0]["field"] == "email"


def test_token_for_deleted_user_is_unauthorized(db):
    client = get_client()
    user = make_user(db, "gone_user")
    headers = bearer(user)
    db.delete(user)
    db.commit()

    r = client.get("/api/users/me", headers=headers)
    assert r.status_code == 401
    assert r.json() == {"status": "error", "message": "User no longer exists"}


def test_production_refuses_development_keys(monkeypatch):
    monkeypatch.setattr(config, "IS_PRODUCTION", True)
    monkeypatch.setattr(config, "SESSION_SECRET", "s" * 40)
    monkeypatch.setattr(config, "JWT_SECRET_KEY", config.DEFAULT_JWT_SECRET_KEY)
    with pytest.raises(RuntimeError, match="JWT_SECRET_KEY"):
        config.assert_production_ready()

    monkeypatch.setattr(config, "JWT_SECRET_KEY", "j" * 40)
    monkeypatch.setattr(config, "SESSION_SECRET", config.DEFAULT_SESSION_SECRET)
    with pytest.raises(RuntimeError, match="SESSION_SECRET"):
        config.assert_production_ready()

    monkeypatch.setattr(config, "SESSION_SECRET", "s" * 40)
    config.assert_production_ready()


def test_refresh_token_flow(db):
    client = get_client()
    body = register(client).json()

    r = client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert r.status_code == 200
    new_access = r.json()["token"]
    assert client.get("/api/users/me", headers={"Authorization": f"Bearer {new_access}"}).status_code == 200

    # An access token is not a refresh token, and vice versa
    assert client.post("/auth/refresh", json={"refreshToken": body["token"]}).status_code == 401
    refresh_as_bearer = {"Authorization": f"Bearer {body['refreshToken']}"}
    assert client.get("/api/users/me", headers=refresh_as_bearer).status_code == 401


def test_deactivated_account_loses_access(db):
    client = get_client()
    user = make_user(db, "soon_disabled")
    headers = bearer(user)
    assert client.get("/api/users/me", headers=headers).status_code == 200
    db.query(User).filter(User.id == user.id).update({User.is_active: False})
    db.commit()
    assert client.get("/api/users/me", headers=headers).status_code == 401


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def test_profile_update_and_password_change(db):
    client = get_client()
    user = make_user(db, "profile_user")
    headers = auth_headers(client, user)

    r = client.patch("/api/users/profile", json={"company": "New Name Ltd", "phone": "13600136000"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["user"]["company"] == "New Name Ltd"
    assert client.get("/api/users/profile", headers=headers).json()["data"]["user"]["phone"] == "13600136000"

    wrong = client.patch(
        "/api/users/profile",
        json={"currentPassword": "Wrong1234", "newPassword": "Another123"},
        headers=headers,
    )
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "Current password is incorrect"

    weak = client.patch(
        "/api/users/profile",
        json={"currentPassword": DEFAULT_PASSWORD, "newPassword": "weak"},
        headers=headers,
    )
    assert weak.status_code == 400

    ok = client.patch(
        "/api/users/profile",
        json={"currentPassword": DEFAULT_PASSWORD, "newPassword": "Another123"},
        headers=headers,
    )
    assert ok.status_code == 200
    login = client.post("/auth/login", json={"email": "profile_user@example.com", "password": "Another123"})
    assert login.status_code == 200


def test_profile_rejects_bad_phone(db):
    client = get_client()
    user = make_user(db, "profile_user")
    r = client.patch("/api/users/profile", json={"phone": "12345"}, headers=auth_headers(client, user))
    assert r.status_code == 400
    assert r.json()["errors"][0]["field"] == "phone"


# ---------------------------------------------------------------------------
# Rate limiting through the pipeline
# ---------------------------------------------------------------------------

def test_api_rate_limit_returns_429_with_retry_hint(db):
    client = get_client()
    user = make_user(db, "busy_buyer")
    with patched_limit(main.api_limiter, 3):
        statuses = []
        for _ in range(3):
            r = client.get("/api/users/me", headers=bearer(user))
            statuses.append(r.status_code)
            assert r.headers["ratelimit-limit"] == "3"
        assert statuses == [200, 200, 200]
        assert r.headers["ratelimit-remaining"] == "0"

        blocked = client.get("/api/users/me", headers=bearer(user))
        assert blocked.status_code == 429
        assert int(blocked.headers["retry-after"]) >= 1
        assert blocked.json()["retryAfter"] == int(blocked.headers["retry-after"])
        assert blocked.json()["status"] == "error"

        # Unlimited classes are unaffected
        assert client.get("/api/health").status_code == 200


def test_auth_rate_limit_counts_failures_only(db):
    client = get_client()
    make_user(db, "login_user")
    good = {"email": "login_user@example.com", "password": DEFAULT_PASSWORD}
    bad = {"email": "login_user@example.com", "password": "Wrong1234"}
    with patched_limit(main.auth_limiter, 2):
        for _ in range(5):
            assert client.post("/auth/login", json=good).status_code == 200
        assert client.post("/auth/login", json=bad).status_code == 401
        assert client.post("/auth/login", json=bad).status_code == 401
        assert client.post("/auth/login", json=good).status_code == 429


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

def test_seed_data_is_idempotent():
    import database
    import seed_data

    seed_data.seed_database()
    seed_data.seed_database()

    session = database.SessionLocal()
    try:
        assert session.query(User).count() == 2
        seller = session.query(User).filter(User.role == "seller").one()
        assert len(seller.products) == len(seed_data.PRODUCTS)
    finally:
        session.close()
