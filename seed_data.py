#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Sample data seeding script for the Industrial Marketplace

Usage:
    python seed_data.py

Creates a demo seller, a demo buyer and a handful of industrial products.
Safe to run repeatedly: existing accounts and products are left as they are.
"""

import logging
import os
import sys

# Ensure we can import from the current directory
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from auth import hash_password
from database import SessionLocal, init_db
from models import Product, User

logger = logging.getLogger("seed_data")

DEMO_PASSWORD = "Demo1234"

USERS = [
    {
        "username": "testseller",
        "email": "testseller@example.com",
        "company": "Precision Industrial Parts Co",
        "phone": "13800138000",
        "role": "seller",
    },
    {
        "username": "testbuyer",
        "email": "testbuyer@example.com",
        "company": "Northside Maintenance Services",
        "phone": "13900139000",
        "role": "buyer",
    },
]

PRODUCTS = [
    {
        "name": "NSK 6308 deep groove ball bearing",
        "description": "High quality deep groove ball bearing for general industrial machinery, wear resistant",
        "category": "bearings",
        "price": 45.80,
        "unit": "piece",
        "specifications": {"material": "GCr15 bearing steel", "size": "40x90x23mm", "precision": "P0"},
        "stock": 500,
        "tags": ["bearing", "nsk"],
    },
    {
        "name": "304 stainless socket head cap screw M6x25",
        "description": "304 stainless steel socket head cap screws, corrosion resistant for outdoor use",
        "category": "fasteners",
        "price": 0.35,
        "unit": "piece",
        "specifications": {"material": "304 stainless", "size": "M6x25mm", "headType": "hex socket"},
        "stock": 10000,
        "tags": ["screw", "stainless"],
    },
    {
        "name": "Y series three-phase induction motor 5.5kW",
        "description": "Energy efficient three-phase induction motor, stable running, low noise, long service life",
        "category": "motors",
        "price": 1280.00,
        "unit": "unit",
        "specifications": {"power": "5.5kW", "voltage": "380V", "speed": "1450rpm", "protection": "IP55"},
        "stock": 20,
        "tags": ["motor", "three-phase"],
    },
    {
        "name": "Gear pump CBN-E306",
        "description": "External gear pump for hydraulic power units, 6 ml/rev displacement",
        "category": "hydraulics",
        "price": 268.00,
        "unit": "unit",
        "specifications": {"displacement": "6ml/r", "pressure": "20MPa"},
        "stock": 8,
        "tags": ["pump"],
    },
]


def _get_or_create_user(db, data) -> User:
    user = db.query(User).filter(User.email == data["email"]).first()
    if user is not None:
        logger.info("[Seed] User %s already exists", data["username"])
        return user
    user = User(hashed_password=hash_password(DEMO_PASSWORD), **data)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("[Seed] Created %s %s", user.role, user.username)
    return user


def seed_database():
    """Seed the database with sample data."""
    logger.info("[Seed] Initializing database...")
    init_db()

    db = SessionLocal()
    try:
        users = {data["role"]: _get_or_create_user(db, data) for data in USERS}
        seller = users["seller"]

        created = 0
        for data in PRODUCTS:
            exists = db.query(Product).filter(Product.seller_id == seller.id, Product.name == data["name"]).first()
            if exists is not None:
                continue
            db.add(Product(seller_id=seller.id, **data))
            created += 1
        db.commit()

        logger.info("[Seed] Created %d products (%d already present)", created, len(PRODUCTS) - created)
        logger.info("[Seed] Demo logins (password %s): %s", DEMO_PASSWORD, ", ".join(u["email"] for u in USERS))
    except Exception:
        db.rollback()
        logger.exception("[Seed] Error during seeding")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    seed_database()
