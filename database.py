#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Engine, session factory and request-scoped sessions for the Industrial Marketplace

The URL comes from DATABASE_URL (SQLite file by default). Routes take a
session through `Depends(get_db)`; tests build their own engine with
`build_engine("sqlite://")` and override `get_db`.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from models import Base

logger = logging.getLogger(__name__)


def build_engine(url: str):
    """
    SQLite is shared across FastAPI's worker threads through a single
    connection (StaticPool, check_same_thread=False); other backends get a
    pre-pinged pool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Create users, products and inquiries tables if missing. Run at startup and by seed_data."""
    Base.metadata.create_all(bind=engine)
    logger.info("Tables created/verified. Database: %s", engine.url.render_as_string(hide_password=True))


def get_db() -> Session:
    """Yield one session per request; closed when the response is done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
