#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Authentication and authorization for the Industrial Marketplace

Features:
- JWT token generation and validation
- Password hashing with bcrypt
- Role-based access control (buyer, seller, admin)
- Token refresh mechanism
- FastAPI dependencies that resolve the bearer credential to a User row

Usage:
    from auth import get_current_user

    @app.post("/protected")
    def protected_route(current_user: User = Depends(get_current_user)):
        return {"user": current_user.username}
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import JWT_SECRET_KEY, ACCESS_TOKEN_EXPIRE_MINUTES, REFRESH_TOKEN_EXPIRE_DAYS
from database import get_db
from errors import Forbidden, Unauthorized
from models import User
from utils import utcnow

ALGORITHM = "HS256"

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Security scheme; missing credentials are reported as 401 by get_current_user
security = HTTPBearer(auto_error=False)


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


# Password utilities
def hash_password(password: str) -> str:
    """Hash a password for storing."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a stored password against one provided by user."""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


# Token utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign a short-lived access token (24h by default) carrying the user id and role.
    `expires_delta` overrides the configured lifetime.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_token(data: dict) -> str:
    """Refresh tokens only mint new access tokens; they are rejected as bearer credentials."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)
    to_encode.update({"exp": expire, "type": "refresh"})
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode JWT token.

    Raises:
        Unauthorized: If token is invalid, expired or carries no user id
    """
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid or expired token")
    if not payload.get("id"):
        raise Unauthorized("Invalid or expired token")
    return payload


def create_tokens_for_user(user: User) -> Token:
    """Token pair returned by register and login."""
    token_data = {"id": user.id, "role": user.role}
    return Token(
        access_token=create_access_token(token_data),
        refresh_token=create_refresh_token(token_data),
        token_type="bearer"
    )


def refresh_access_token(refresh_token: str) -> str:
    """
    Generate new access token from refresh token.

    Raises:
        Unauthorized: If refresh token is invalid or not a refresh type
    """
    payload = verify_token(refresh_token)
    if payload.get("type") != "refresh":
        raise Unauthorized("Invalid token type")
    return create_access_token({"id": payload["id"], "role": payload.get("role")})


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Return the user for valid credentials, else None."""
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user


def update_last_login(db: Session, user: User) -> None:
    user.last_login = utcnow()
    db.commit()
    db.refresh(user)


# FastAPI dependencies
def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the bearer credential to a User row.

    Raises:
        Unauthorized: If the header is missing, the token is invalid, or the
            account no longer exists or was deactivated
    """
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Please provide an access token")
    payload = verify_token(credentials.credentials)
    if payload.get("type") == "refresh":
        raise Unauthorized("Invalid token type")
    user = db.query(User).filter(User.id == payload["id"]).first()
    if user is None:
        raise Unauthorized("User no longer exists")
    if not user.is_active:
        raise Unauthorized("Account is disabled")
    return user


def require_role(*roles: str):
    """
    Dependency factory for role-based access control. Admins always pass.

    Usage:
        @app.post("/api/products")
        def create_product(current_user: User = Depends(require_role("seller"))):
            ...
    """
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles and current_user.role != "admin":
            raise Forbidden(f"Insufficient permissions. Required role: {', '.join(roles)}")
        return current_user

    return role_checker


require_seller = require_role("seller")
