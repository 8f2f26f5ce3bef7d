#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Product catalog operations

Features:
- Listing and keyword search over active products
- Seller-owned create/update with field validation before any write
- Counter updates (views, stock) issued as single UPDATE statements so they
  never go through full validation and never race each other
"""

import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from errors import Forbidden, InsufficientStock, ProductNotFound
from models import Product, User
from utils import round_money, utcnow
from validators import require_valid, validate_object_id, validate_product_fields

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 20
UPDATABLE_FIELDS = (
    "name", "description", "category", "price", "unit", "stock",
    "min_order_quantity", "images", "specifications", "tags", "is_active",
)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def get_active_product(db: Session, product_id: str) -> Product:
    require_valid(validate_object_id(product_id, "id"), "Invalid product id")
    product = db.query(Product).filter(Product.id == product_id, Product.is_active.is_(True)).first()
    if product is None:
        raise ProductNotFound("Product not found")
    return product


def list_active_products(db: Session, skip: int = 0, limit: int = 10) -> Tuple[List[Product], int]:
    query = db.query(Product).filter(Product.is_active.is_(True))
    total = query.count()
    items = query.order_by(Product.created_at.desc(), Product.id.desc()).offset(skip).limit(limit).all()
    return items, total


def search_products(db: Session, term: str, limit: int = SEARCH_RESULT_LIMIT) -> List[Product]:
    """Case-insensitive substring match on name, description and category."""
    pattern = f"%{_escape_like(term)}%"
    return (
        db.query(Product)
        .filter(
            Product.is_active.is_(True),
            or_(
                Product.name.ilike(pattern, escape="\\"),
                Product.description.ilike(pattern, escape="\\"),
                Product.category.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(Product.created_at.desc())
        .limit(limit)
        .all()
    )


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(data)
    for key in ("name", "description"):
        if isinstance(values.get(key), str):
            values[key] = values[key].strip()
    if "price" in values and values["price"] is not None:
        values["price"] = round_money(values["price"])
    if values.get("tags") is not None:
        values["tags"] = [tag.strip() for tag in values["tags"]]
    return values


def create_product(db: Session, seller: User, data: Dict[str, Any]) -> Product:
    if seller.role not in ("seller", "admin"):
        raise Forbidden("Only sellers can create products")
    require_valid(validate_product_fields(data))
    values = _normalize(data)
    product = Product(
        seller_id=seller.id,
        name=values["name"],
        description=values["description"],
        category=values["category"],
        price=values["price"],
        unit=values["unit"],
        stock=values["stock"],
        min_order_quantity=values.get("min_order_quantity") or 1,
        images=values.get("images") or [],
        specifications=values.get("specifications") or {},
        tags=values.get("tags") or [],
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    logger.info("Product %s listed by seller %s", product.id, seller.id, extra={"event": "product_created"})
    return product


def update_product(db: Session, product_id: str, user: User, data: Dict[str, Any]) -> Product:
    """Apply a partial update; only the owning seller (or an admin) may edit."""
    require_valid(validate_object_id(product_id, "id"), "Invalid product id")
    product = db.query(Product).filter(Product.id == product_id).first()
    if product is None:
        raise ProductNotFound("Product not found")
    if product.seller_id != user.id and user.role != "admin":
        raise Forbidden("You can only edit your own products")

    changes = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS}
    require_valid(validate_product_fields(changes, partial=True))
    for key, value in _normalize(changes).items():
        setattr(product, key, value)
    db.commit()
    db.refresh(product)
    return product


def increment_views(db: Session, product_id: str) -> None:
    db.query(Product).filter(Product.id == product_id).update(
        {Product.views: Product.views + 1}, synchronize_session=False
    )
    db.commit()


def decrease_stock(db: Session, product_id: str, quantity: int) -> None:
    """
    Atomically take quantity units out of stock.

    Raises:
        InsufficientStock: fewer than quantity units remain; stock is untouched
    """
    updated = (
        db.query(Product)
        .filter(Product.id == product_id, Product.stock >= quantity)
        .update(
            {Product.stock: Product.stock - quantity, Product.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        raise InsufficientStock()
    db.commit()


def increase_stock(db: Session, product_id: str, quantity: int) -> None:
    updated = (
        db.query(Product)
        .filter(Product.id == product_id)
        .update(
            {Product.stock: Product.stock + quantity, Product.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        raise ProductNotFound("Product not found")
    db.commit()
