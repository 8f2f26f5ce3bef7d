#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
FastAPI backend for the Industrial Marketplace (B2B inquiries for industrial goods).

- Endpoints:
  * POST /auth/register, /auth/login, /auth/refresh, /auth/logout
  * GET/POST /api/products, GET /api/products/search/{query}, GET/PUT /api/products/{id}
  * GET /api/users/me, GET/PATCH /api/users/profile
  * POST /api/inquiries, GET /api/inquiries/my-inquiries, /seller-inquiries, /stats,
    GET /api/inquiries/{id}, PATCH /api/inquiries/{id}/respond, /status
  * GET /api/csrf-token, /api/health, /api/security-info, /api/test-auth
  * GET /openapi.yaml     (OpenAPI schema in YAML)

Notes:
- Every request passes through pipeline.SecurityPipeline (security headers,
  input sanitization, rate limiting, CSRF) inside a signed-cookie session.
- Inquiry state changes go through inquiries.py; routes only decide who may
  call what.
- Responses use {"status": "success", "data": {...}} and errors
  {"status": "error", "message": ...}.
"""

import logging
import os
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

import inquiries as inquiry_engine
import products as catalog
from auth import (
    authenticate_user,
    create_tokens_for_user,
    get_current_user,
    hash_password,
    refresh_access_token,
    require_seller,
    update_last_login,
    verify_password,
)
from config import (
    API_RATE_LIMIT_MAX,
    API_RATE_LIMIT_WINDOW_SEC,
    APP_ENV,
    AUTH_RATE_LIMIT_MAX,
    AUTH_RATE_LIMIT_WINDOW_SEC,
    CORS_ORIGINS,
    CSRF_ENABLED,
    DEBUG_ROUTES,
    IS_PRODUCTION,
    LOG_LEVEL,
    PORT,
    RATE_LIMIT_ENABLED,
    SESSION_COOKIE,
    SESSION_MAX_AGE_SECONDS,
    SESSION_SECRET,
    assert_production_ready,
)
from database import get_db, init_db
from errors import Conflict, NotFound, Unauthorized, ValidationError, register_exception_handlers
from models import Inquiry, Product, User
from pipeline import SESSION_ID_KEY, SecurityPipeline
from security import CsrfTokenService, MemoryStateStore, SlidingWindowRateLimiter
from utils import pagination_block, paginate, utcnow
from validators import (
    require_valid,
    validate_password,
    validate_profile_update,
    validate_registration,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

assert_production_ready()

STARTED_AT = time.monotonic()
MAX_PAGE_SIZE = 100

tags_metadata = [
    {"name": "meta", "description": "Service metadata, health and OpenAPI schema"},
    {"name": "auth", "description": "Registration, login and token refresh"},
    {"name": "security", "description": "CSRF token issuance and security status"},
    {"name": "products", "description": "Industrial product catalog"},
    {"name": "users", "description": "Current user profile"},
    {"name": "inquiries", "description": "Buyer inquiries, seller quotes and status lifecycle"},
]

app = FastAPI(
    title="Industrial Marketplace API",
    version="1.0.0",
    description="B2B marketplace backend: sellers list industrial goods, buyers send inquiries, sellers respond with quotes.",
    openapi_tags=tags_metadata,
)

# Server-side state, injected into the CSRF service and the limiters
session_store = MemoryStateStore(ttl_seconds=SESSION_MAX_AGE_SECONDS)
auth_rate_store = MemoryStateStore(ttl_seconds=AUTH_RATE_LIMIT_WINDOW_SEC)
api_rate_store = MemoryStateStore(ttl_seconds=API_RATE_LIMIT_WINDOW_SEC)

csrf_service = CsrfTokenService(session_store)
auth_limiter = SlidingWindowRateLimiter(
    "auth", auth_rate_store, AUTH_RATE_LIMIT_MAX, AUTH_RATE_LIMIT_WINDOW_SEC,
    enabled=RATE_LIMIT_ENABLED, count_only_failures=True,
)
api_limiter = SlidingWindowRateLimiter(
    "api", api_rate_store, API_RATE_LIMIT_MAX, API_RATE_LIMIT_WINDOW_SEC,
    enabled=RATE_LIMIT_ENABLED,
)

# Added innermost first: SessionMiddleware ends up outermost so the pipeline sees the session
app.add_middleware(
    SecurityPipeline,
    csrf_service=csrf_service,
    auth_limiter=auth_limiter,
    api_limiter=api_limiter,
    csrf_enabled=CSRF_ENABLED,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-XSRF-Token", "X-Requested-With"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    session_cookie=SESSION_COOKIE,
    max_age=SESSION_MAX_AGE_SECONDS,
    same_site="lax",
    https_only=IS_PRODUCTION,
)

register_exception_handlers(app)


@app.on_event("startup")
def _startup_init_db():
    init_db()
    logger.info("[startup] Marketplace database initialized (env=%s)", APP_ENV)


# ============================================================================
# SERIALIZATION
# ============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds") + "Z"


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "company": user.company,
        "phone": user.phone,
        "role": user.role,
        "isActive": user.is_active,
        "lastLogin": _iso(user.last_login),
        "displayName": user.display_name,
        "createdAt": _iso(user.created_at),
        "updatedAt": _iso(user.updated_at),
    }


def _party(user: Optional[User], with_contact: bool = False) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    data = {"id": user.id, "username": user.username, "company": user.company}
    if with_contact:
        data["email"] = user.email
        data["phone"] = user.phone
    return data


def serialize_product(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "price": product.price,
        "unit": product.unit,
        "specifications": product.specifications or {},
        "images": product.images or [],
        "tags": product.tags or [],
        "stock": product.stock,
        "minOrderQuantity": product.min_order_quantity,
        "isActive": product.is_active,
        "views": product.views,
        "isAvailable": product.is_available,
        "stockStatus": product.stock_status,
        "seller": _party(product.seller),
        "createdAt": _iso(product.created_at),
        "updatedAt": _iso(product.updated_at),
    }


def _product_summary(product: Optional[Product]) -> Optional[Dict[str, Any]]:
    if product is None:
        return None
    return {
        "id": product.id,
        "name": product.name,
        "price": product.price,
        "unit": product.unit,
        "images": product.images or [],
        "category": product.category,
    }


def serialize_inquiry(inquiry: Inquiry, with_contact: bool = True) -> Dict[str, Any]:
    response = None
    if inquiry.has_response:
        response = {
            "message": inquiry.response_message,
            "price": inquiry.response_price,
            "deliveryTime": inquiry.response_delivery_time,
            "respondedAt": _iso(inquiry.responded_at),
        }
    return {
        "id": inquiry.id,
        "product": _product_summary(inquiry.product),
        "buyer": _party(inquiry.buyer, with_contact),
        "seller": _party(inquiry.seller, with_contact),
        "quantity": inquiry.quantity,
        "message": inquiry.message,
        "expectedPrice": inquiry.expected_price,
        "urgency": inquiry.urgency,
        "status": inquiry.status,
        "buyerContact": {"phone": inquiry.buyer_phone, "email": inquiry.buyer_email},
        "response": response,
        "canRespond": inquiry.can_respond,
        "isCompleted": inquiry.is_completed,
        "responseTimeHours": inquiry.response_time_hours,
        "createdAt": _iso(inquiry.created_at),
        "updatedAt": _iso(inquiry.updated_at),
    }


def _page_params(page: Optional[int], limit: Optional[int]):
    page, limit, skip = paginate(page, limit)
    if limit > MAX_PAGE_SIZE:
        raise ValidationError(f"Page size cannot exceed {MAX_PAGE_SIZE}")
    return page, limit, skip


# ============================================================================
# META
# ============================================================================

@app.get("/", tags=["meta"], include_in_schema=False)
def root():
    return {
        "status": "success",
        "data": {"service": app.title, "version": app.version, "docs": "/docs", "openapi": "/openapi.yaml"},
    }


@app.get("/openapi.yaml", tags=["meta"])
def openapi_yaml():
    """Serve OpenAPI schema as YAML for tooling compatibility."""
    schema = app.openapi()
    yml = yaml.safe_dump(schema, sort_keys=False)
    return Response(yml, media_type="application/yaml")


@app.get("/api/health", tags=["meta"])
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.warning("Health check could not reach the database: %s", type(e).__name__)
        database = "disconnected"
    return {
        "status": "success",
        "data": {
            "server": "running",
            "database": database,
            "timestamp": _iso(utcnow()),
            "uptime": round(time.monotonic() - STARTED_AT, 3),
            "environment": APP_ENV,
        },
    }


@app.get("/api/security-info", tags=["security"])
def security_info():
    return {
        "status": "success",
        "data": {
            "security": {
                "headers": "enabled",
                "cors": "enabled",
                "csrf": "enabled" if CSRF_ENABLED else "disabled",
                "xss": "enabled",
                "rateLimit": "enabled" if RATE_LIMIT_ENABLED else "disabled",
                "environment": APP_ENV,
            }
        },
    }


@app.get("/api/csrf-token", tags=["security"])
def get_csrf_token(request: Request):
    """
    Issue an anti-forgery token for the caller's session.

    Creates the session on first call. Tokens are reusable and stay valid for
    the session's lifetime; send one back as X-CSRF-Token (or body `_csrf`)
    on every POST/PUT/PATCH/DELETE.
    """
    session_id = request.session.get(SESSION_ID_KEY)
    if not session_id:
        session_id = secrets.token_urlsafe(18)
        request.session[SESSION_ID_KEY] = session_id
    secret, _ = csrf_service.ensure_secret(session_id)
    return {"status": "success", "data": {"csrfToken": csrf_service.create_token(secret)}}


@app.api_route("/api/debug/session", methods=["GET", "POST"], tags=["security"], include_in_schema=False)
def debug_session(request: Request):
    if not DEBUG_ROUTES:
        raise NotFound("API endpoint not found")
    session_id = request.session.get(SESSION_ID_KEY)
    return {
        "status": "success",
        "data": {
            "hasSession": bool(session_id),
            "hasCsrfSecret": csrf_service.get_secret(session_id) is not None,
            "method": request.method,
        },
    }


@app.get("/api/test-auth", tags=["meta"])
def test_auth(current_user: User = Depends(get_current_user)):
    return {"status": "success", "message": "Authentication OK", "user": serialize_user(current_user)}


# ============================================================================
# AUTH
# ============================================================================

class RegisterRequest(BaseModel):
    username: str
    email: EmailStr
    password: str
    company: str
    phone: Optional[str] = None
    role: str = "buyer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken")


def _auth_payload(user: User) -> Dict[str, Any]:
    tokens = create_tokens_for_user(user)
    return {
        "status": "success",
        "token": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "tokenType": tokens.token_type,
        "data": {"user": serialize_user(user)},
    }


@app.post("/auth/register", tags=["auth"], status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a buyer or seller account and return JWT tokens.

    Username and email must be unique; email is stored lower-cased.
    """
    email = payload.email.strip().lower()
    phone = payload.phone or None
    require_valid(validate_registration(
        payload.username, email, payload.password, payload.company, phone, payload.role
    ))

    conflicts = []
    if db.query(User).filter(User.username == payload.username).first():
        conflicts.append({"field": "username", "message": "Username already exists", "value": payload.username})
    if db.query(User).filter(User.email == email).first():
        conflicts.append({"field": "email", "message": "Email already registered", "value": email})
    if conflicts:
        raise Conflict(conflicts[0]["message"], errors=conflicts)

    user = User(
        username=payload.username,
        email=email,
        hashed_password=hash_password(payload.password),
        company=payload.company.strip(),
        phone=phone,
        role=payload.role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered %s account %s", user.role, user.id, extra={"event": "user_registered"})
    return _auth_payload(user)


@app.post("/auth/login", tags=["auth"])
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    """Authenticate with email and password; stamps lastLogin."""
    user = authenticate_user(db, payload.email, payload.password)
    if user is None:
        logger.warning("Login failed: bad credentials", extra={"event": "login_failed"})
        raise Unauthorized("Incorrect email or password")
    if not user.is_active:
        logger.warning("Login refused for disabled account %s", user.id, extra={"event": "login_failed"})
        raise Unauthorized("Account is disabled, please contact an administrator")
    update_last_login(db, user)
    return _auth_payload(user)


@app.post("/auth/refresh", tags=["auth"])
def refresh_token(payload: RefreshRequest):
    """Exchange a refresh token for a new access token."""
    return {
        "status": "success",
        "token": refresh_access_token(payload.refresh_token),
        "tokenType": "bearer",
    }


@app.post("/auth/logout", tags=["auth"])
def logout(request: Request):
    session_id = request.session.get(SESSION_ID_KEY)
    if session_id:
        csrf_service.drop_secret(session_id)
    request.session.clear()
    return {"status": "success", "message": "Logged out"}


# ============================================================================
# PRODUCTS
# ============================================================================

class ProductCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str
    category: str
    price: float
    unit: str
    stock: int
    min_order_quantity: Optional[int] = Field(None, alias="minOrderQuantity")
    images: List[str] = Field(default_factory=list)
    specifications: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    unit: Optional[str] = None
    stock: Optional[int] = None
    min_order_quantity: Optional[int] = Field(None, alias="minOrderQuantity")
    images: Optional[List[str]] = None
    specifications: Optional[Dict[str, str]] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


@app.get("/api/products", tags=["products"])
def list_products(
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    page, limit, skip = _page_params(page, limit)
    items, total = catalog.list_active_products(db, skip, limit)
    return {
        "status": "success",
        "results": len(items),
        "total": total,
        "data": {"products": [serialize_product(p) for p in items]},
        "pagination": pagination_block(page, limit, total),
    }


@app.post("/api/products", tags=["products"], status_code=201)
def create_product(
    payload: ProductCreate,
    current_user: User = Depends(require_seller),
    db: Session = Depends(get_db),
):
    """List a new product. Sellers only."""
    product = catalog.create_product(db, current_user, payload.model_dump())
    return {"status": "success", "data": {"product": serialize_product(product)}}


@app.get("/api/products/search/{query}", tags=["products"])
def search_products(query: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Keyword search over name, description and category (at most 20 results)."""
    term = query.strip()
    if len(term) < 2 or len(term) > 50:
        raise ValidationError("Search keyword must be 2-50 characters")
    items = catalog.search_products(db, term)
    return {"status": "success", "results": len(items), "data": {"products": [serialize_product(p) for p in items]}}


@app.get("/api/products/{product_id}", tags=["products"])
def get_product(product_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    product = catalog.get_active_product(db, product_id)
    catalog.increment_views(db, product.id)
    db.refresh(product)
    return {"status": "success", "data": {"product": serialize_product(product)}}


@app.put("/api/products/{product_id}", tags=["products"])
def update_product(
    product_id: str,
    payload: ProductUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update product details; only the owning seller (or an admin) may edit."""
    product = catalog.update_product(db, product_id, current_user, payload.model_dump(exclude_unset=True))
    return {"status": "success", "data": {"product": serialize_product(product)}}


# ============================================================================
# USERS
# ============================================================================

class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    company: Optional[str] = None
    phone: Optional[str] = None
    current_password: Optional[str] = Field(None, alias="currentPassword")
    new_password: Optional[str] = Field(None, alias="newPassword")


@app.get("/api/users/me", tags=["users"])
def get_me(current_user: User = Depends(get_current_user)):
    return {"status": "success", "data": {"user": serialize_user(current_user)}}


@app.get("/api/users/profile", tags=["users"])
def get_profile(current_user: User = Depends(get_current_user)):
    return {"status": "success", "data": {"user": serialize_user(current_user)}}


@app.patch("/api/users/profile", tags=["users"])
def update_profile(
    payload: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Update company and phone. A password change needs both currentPassword
    and newPassword; the current password is verified first.
    """
    errors = validate_profile_update(payload.company, payload.phone)
    if payload.current_password and payload.new_password:
        errors += validate_password(payload.new_password, "newPassword")
    require_valid(errors)

    if payload.current_password and payload.new_password:
        if not verify_password(payload.current_password, current_user.hashed_password):
            raise ValidationError("Current password is incorrect")
        current_user.hashed_password = hash_password(payload.new_password)
    if payload.company is not None:
        current_user.company = payload.company.strip()
    if payload.phone is not None:
        current_user.phone = payload.phone or None
    db.commit()
    db.refresh(current_user)
    return {"status": "success", "data": {"user": serialize_user(current_user)}}


# ============================================================================
# INQUIRIES
# ============================================================================

class InquiryCreate(BaseModel):
    """Loosely typed so business checks run before field validation."""
    model_config = ConfigDict(populate_by_name=True)

    product_id: Any = Field(None, alias="productId")
    quantity: Any = None
    message: Any = None
    expected_price: Any = Field(None, alias="expectedPrice")
    urgency: Optional[str] = None


class InquiryRespond(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Any = None
    price: Any = None
    delivery_time: Any = Field(None, alias="deliveryTime")


class InquiryStatusUpdate(BaseModel):
    status: str


def _inquiry_page(items: List[Inquiry], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "status": "success",
        "results": len(items),
        "total": total,
        "data": {"inquiries": [serialize_inquiry(i) for i in items]},
        "pagination": pagination_block(page, limit, total),
    }


@app.post("/api/inquiries", tags=["inquiries"], status_code=201)
def create_inquiry(
    payload: InquiryCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Send an inquiry for an active product.

    Fails with 404 for unknown or unlisted products, and 400 when the
    quantity exceeds current stock or the product is the caller's own.
    Stock is not reserved.
    """
    inquiry = inquiry_engine.create_inquiry(
        db,
        buyer_id=current_user.id,
        product_id=payload.product_id,
        quantity=payload.quantity,
        message=payload.message,
        expected_price=payload.expected_price,
        urgency=payload.urgency,
        buyer_contact={"phone": current_user.phone, "email": current_user.email},
    )
    return {"status": "success", "data": {"inquiry": serialize_inquiry(inquiry)}}


@app.get("/api/inquiries/my-inquiries", tags=["inquiries"])
def my_inquiries(
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    page, limit, skip = _page_params(page, limit)
    items, total = inquiry_engine.list_for_buyer(db, current_user.id, skip, limit)
    return _inquiry_page(items, total, page, limit)


@app.get("/api/inquiries/seller-inquiries", tags=["inquiries"])
def seller_inquiries(
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    page, limit, skip = _page_params(page, limit)
    items, total = inquiry_engine.list_for_seller(db, current_user.id, skip, limit)
    return _inquiry_page(items, total, page, limit)


@app.get("/api/inquiries/stats", tags=["inquiries"])
def inquiry_stats(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {
        "status": "success",
        "data": {
            "asBuyer": inquiry_engine.buyer_stats(db, current_user.id),
            "asSeller": inquiry_engine.seller_stats(db, current_user.id),
            "pendingResponses": inquiry_engine.pending_count(db, current_user.id),
        },
    }


@app.get("/api/inquiries/{inquiry_id}", tags=["inquiries"])
def get_inquiry(inquiry_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Only the inquiry's buyer or seller may read it (403 otherwise)."""
    inquiry = inquiry_engine.get_inquiry_for_party(db, inquiry_id, current_user.id)
    return {"status": "success", "data": {"inquiry": serialize_inquiry(inquiry)}}


@app.patch("/api/inquiries/{inquiry_id}/respond", tags=["inquiries"])
def respond_to_inquiry(
    inquiry_id: str,
    payload: InquiryRespond,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Seller's quote. Only pending inquiries can be answered, and only once."""
    inquiry = inquiry_engine.get_inquiry_for_seller(db, inquiry_id, current_user.id)
    inquiry = inquiry_engine.respond(db, inquiry, payload.message, payload.price, payload.delivery_time)
    return {"status": "success", "data": {"inquiry": serialize_inquiry(inquiry)}}


@app.patch("/api/inquiries/{inquiry_id}/status", tags=["inquiries"])
def update_inquiry_status(
    inquiry_id: str,
    payload: InquiryStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Move an inquiry along its lifecycle.

    The seller may complete or cancel; the buyer may accept, reject or cancel.
    """
    inquiry = inquiry_engine.get_inquiry_for_party(db, inquiry_id, current_user.id)
    inquiry_engine.check_transition(inquiry.status, payload.status)
    inquiry_engine.authorize_transition(inquiry, current_user.id, payload.status)
    inquiry = inquiry_engine.request_transition(db, inquiry, payload.status)
    return {"status": "success", "data": {"inquiry": serialize_inquiry(inquiry)}}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=os.getenv("HOST", "0.0.0.0"), port=PORT, reload=False)
