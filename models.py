#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Database models for the Industrial Marketplace

Tables:
- Users: Buyers, sellers and admins, identified by username and email
- Products: Industrial goods listed by a seller, with stock and pricing
- Inquiries: A buyer's purchase request against a product, with the
  seller's quote and a status lifecycle

Every row is keyed by a 24-hex-character string id. Models only describe
storage and derived read-only values; field validation lives in validators.py.
"""

import math

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, Text, Index, JSON
from sqlalchemy.orm import relationship, declarative_base

from utils import new_object_id, utcnow

Base = declarative_base()

USER_ROLES = ("buyer", "seller", "admin")

INQUIRY_STATUSES = ("pending", "responded", "accepted", "rejected", "completed", "cancelled")


class User(Base):
    __tablename__ = "users"

    id = Column(String(24), primary_key=True, default=new_object_id)
    username = Column(String(20), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)  # never serialized
    company = Column(String(100), nullable=False)
    phone = Column(String(20))
    role = Column(String(10), nullable=False, default="buyer")  # buyer, seller, admin
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    products = relationship("Product", back_populates="seller")

    __table_args__ = (
        Index("idx_user_role_created", "role", "created_at"),
    )

    @property
    def display_name(self) -> str:
        return f"{self.username} ({self.company})"


class Product(Base):
    __tablename__ = "products"

    id = Column(String(24), primary_key=True, default=new_object_id)
    seller_id = Column(String(24), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=False)
    category = Column(String(50), nullable=False, index=True)
    price = Column(Float, nullable=False)
    unit = Column(String(20), nullable=False)
    specifications = Column(JSON, default=dict)  # up to 20 key/value entries
    images = Column(JSON, default=list)  # up to 10 image URLs
    tags = Column(JSON, default=list)
    stock = Column(Integer, nullable=False, default=0)
    min_order_quantity = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    views = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    seller = relationship("User", back_populates="products")

    __table_args__ = (
        Index("idx_product_category_active", "category", "is_active"),
        Index("idx_product_active_stock", "is_active", "stock"),
        Index("idx_product_price", "price"),
        Index("idx_product_views", "views"),
    )

    @property
    def is_available(self) -> bool:
        return bool(self.is_active) and (self.stock or 0) > 0

    @property
    def stock_status(self) -> str:
        stock = self.stock or 0
        if stock == 0:
            return "out_of_stock"
        if stock <= 10:
            return "low"
        if stock <= 50:
            return "normal"
        return "ample"


class Inquiry(Base):
    __tablename__ = "inquiries"

    id = Column(String(24), primary_key=True, default=new_object_id)
    product_id = Column(String(24), ForeignKey("products.id"), nullable=False, index=True)
    buyer_id = Column(String(24), ForeignKey("users.id"), nullable=False, index=True)
    # Snapshot of product.seller_id at creation; not kept in sync afterwards
    seller_id = Column(String(24), ForeignKey("users.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    message = Column(Text, nullable=False)
    expected_price = Column(Float)
    urgency = Column(String(10), nullable=False, default="medium")  # low, medium, high
    status = Column(String(20), nullable=False, default="pending", index=True)

    # Buyer contact snapshot
    buyer_phone = Column(String(20))
    buyer_email = Column(String(255))

    # Seller response
    response_message = Column(Text)
    response_price = Column(Float)
    response_delivery_time = Column(String(100))
    responded_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    product = relationship("Product")
    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])

    __table_args__ = (
        Index("idx_inquiry_buyer_created", "buyer_id", "created_at"),
        Index("idx_inquiry_seller_created", "seller_id", "created_at"),
        Index("idx_inquiry_seller_status", "seller_id", "status"),
        Index("idx_inquiry_buyer_status", "buyer_id", "status"),
    )

    @property
    def can_respond(self) -> bool:
        return self.status == "pending"

    @property
    def is_completed(self) -> bool:
        return self.status in ("accepted", "rejected", "completed", "cancelled")

    @property
    def has_response(self) -> bool:
        return self.responded_at is not None

    @property
    def response_time_hours(self):
        """Whole hours between creation and the seller's response, or None."""
        if self.responded_at is None or self.created_at is None:
            return None
        elapsed = (self.responded_at - self.created_at).total_seconds()
        return int(math.floor(elapsed / 3600.0 + 0.5))
