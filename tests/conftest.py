#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Shared fixtures: in-memory SQLite wired in through dependency_overrides,
fresh tables and fresh session/limiter stores for every test.
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import main
from auth import create_access_token, hash_password
from database import build_engine, get_db
from models import Base, Product, User

engine = build_engine("sqlite://")
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

DEFAULT_PASSWORD = "Passw0rd"
_PASSWORD_HASH = hash_password(DEFAULT_PASSWORD)


def override_get_db():
    """Override database dependency for testing."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


main.app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def reset_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    main.session_store.clear()
    main.auth_limiter.reset()
    main.api_limiter.reset()
    yield


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(main.app)


def make_user(db, username, role="buyer", phone=None, email=None, is_active=True):
    user = User(
        username=username,
        email=email or f"{username}@example.com",
        hashed_password=_PASSWORD_HASH,
        company=f"{username.title()} Industrial Co",
        phone=phone,
        role=role,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_product(db, seller, stock=10, price=25.5, name="Deep groove ball bearing 6204", is_active=True):
    product = Product(
        seller_id=seller.id,
        name=name,
        description="Sealed deep groove ball bearing for electric motors",
        category="bearings",
        price=price,
        unit="piece",
        stock=stock,
        is_active=is_active,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'id': user.id, 'role': user.role})}"}


def csrf_token(client):
    response = client.get("/api/csrf-token")
    assert response.status_code == 200
    return response.json()["data"]["csrfToken"]


def auth_headers(client, user):
    """Bearer credential plus a CSRF token bound to the client's session cookie."""
    headers = bearer(user)
    headers["X-CSRF-Token"] = csrf_token(client)
    return headers
