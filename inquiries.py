#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Inquiry lifecycle engine

Statuses and the only permitted moves between them:

    pending   -> responded, cancelled
    responded -> accepted, rejected, completed
    accepted  -> completed, cancelled
    rejected  -> cancelled
    completed -> (terminal)
    cancelled -> (terminal)

`responded` is reached exclusively through respond(), which writes the
seller's quote in the same update. Every write is a single conditional
UPDATE on the observed status, so two racing writers cannot both succeed.

Authorization (who may read or move an inquiry) is decided by the caller;
the helpers at the bottom of this module implement the rules the HTTP layer
applies.
"""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from errors import (
    AlreadyResponded,
    Forbidden,
    InquiryNotFound,
    InsufficientStock,
    InvalidTransition,
    ProductNotFound,
    SelfInquiryForbidden,
    Timeout,
)
from models import Inquiry, Product
from utils import floor_quantity, round_money, utcnow
from validators import (
    is_number,
    require_valid,
    validate_buyer_contact,
    validate_inquiry_fields,
    validate_object_id,
    validate_response_fields,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("responded", "cancelled"),
    "responded": ("accepted", "rejected", "completed"),
    "accepted": ("completed", "cancelled"),
    "rejected": ("cancelled",),
    "completed": (),
    "cancelled": (),
}

TERMINAL_STATUSES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)

# Targets each party may request through request_transition()
SELLER_TARGETS = frozenset({"completed", "cancelled"})
BUYER_TARGETS = frozenset({"accepted", "rejected", "cancelled"})


def _commit(db: Session) -> None:
    try:
        db.commit()
    except PoolTimeoutError:
        db.rollback()
        raise Timeout("Timed out while saving the inquiry")


def allowed_transitions(status: str) -> Tuple[str, ...]:
    return VALID_TRANSITIONS.get(status, ())


def check_transition(current: str, target: str) -> None:
    """
    Raise InvalidTransition unless target is reachable from current.

    `responded` is rejected here even though the table lists it: it carries a
    quote and can only be reached via respond().
    """
    if target == "responded" and current == "pending":
        raise InvalidTransition("Use respond to answer a pending inquiry")
    if target not in allowed_transitions(current):
        raise InvalidTransition(f"Cannot change status from {current} to {target}")


def create_inquiry(
    db: Session,
    buyer_id: str,
    product_id: str,
    quantity,
    message,
    expected_price=None,
    urgency: Optional[str] = None,
    buyer_contact: Optional[Dict[str, Optional[str]]] = None,
) -> Inquiry:
    """
    Submit a buyer's inquiry for a product.

    Checks run in a fixed order: product id format (before touching the
    store), product exists and is active, quantity within current stock,
    buyer is not the seller, then the remaining field rules.

    Stock is only compared, never reserved: concurrent inquiries may together
    exceed it.
    """
    require_valid(validate_object_id(product_id, "productId"), "Invalid product id")

    product = db.query(Product).filter(Product.id == product_id, Product.is_active.is_(True)).first()
    if product is None:
        raise ProductNotFound()

    if is_number(quantity) and floor_quantity(quantity) > product.stock:
        raise InsufficientStock(f"Insufficient stock, currently {product.stock} available")

    if product.seller_id == buyer_id:
        raise SelfInquiryForbidden()

    contact = buyer_contact or {}
    errors = validate_inquiry_fields(quantity, message, expected_price, urgency)
    errors += validate_buyer_contact(contact.get("phone"), contact.get("email"))
    require_valid(errors)

    inquiry = Inquiry(
        product_id=product.id,
        buyer_id=buyer_id,
        seller_id=product.seller_id,
        quantity=floor_quantity(quantity),
        message=message.strip(),
        expected_price=round_money(expected_price),
        urgency=urgency or "medium",
        status="pending",
        buyer_phone=contact.get("phone") or None,
        buyer_email=(contact.get("email") or "").strip().lower() or None,
    )
    db.add(inquiry)
    _commit(db)
    db.refresh(inquiry)
    logger.info(
        "Inquiry %s created for product %s (qty=%s)",
        inquiry.id, product.id, inquiry.quantity,
        extra={"event": "inquiry_created"},
    )
    return inquiry


def respond(db: Session, inquiry: Inquiry, message, price, delivery_time) -> Inquiry:
    """
    Record the seller's quote and move pending -> responded in one update.

    Raises:
        AlreadyResponded: status is anything but pending, including when a
            concurrent respond() won the race
        ValidationError: quote fields out of range
    """
    if inquiry.status != "pending":
        raise AlreadyResponded()
    require_valid(validate_response_fields(message, price, delivery_time))

    now = utcnow()
    updated = (
        db.query(Inquiry)
        .filter(Inquiry.id == inquiry.id, Inquiry.status == "pending")
        .update(
            {
                Inquiry.status: "responded",
                Inquiry.response_message: message.strip(),
                Inquiry.response_price: round_money(price),
                Inquiry.response_delivery_time: delivery_time.strip(),
                Inquiry.responded_at: now,
                Inquiry.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        db.refresh(inquiry)
        raise AlreadyResponded()
    _commit(db)
    db.refresh(inquiry)
    logger.info("Inquiry %s responded", inquiry.id, extra={"event": "inquiry_responded"})
    return inquiry


def request_transition(db: Session, inquiry: Inquiry, target: str) -> Inquiry:
    """
    Move an inquiry to target along the transition table.

    No side effects beyond the status column; the product is untouched.

    Raises:
        InvalidTransition: target not allowed from the current status, or
            the status changed underneath us
    """
    current = inquiry.status
    check_transition(current, target)

    updated = (
        db.query(Inquiry)
        .filter(Inquiry.id == inquiry.id, Inquiry.status == current)
        .update({Inquiry.status: target, Inquiry.updated_at: utcnow()}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        db.refresh(inquiry)
        raise InvalidTransition(f"Cannot change status from {inquiry.status} to {target}")
    _commit(db)
    db.refresh(inquiry)
    logger.info(
        "Inquiry %s moved %s -> %s", inquiry.id, current, target,
        extra={"event": "inquiry_transition"},
    )
    return inquiry


# ============================================================================
# Reads and party rules
# ============================================================================

def _require_id(inquiry_id: str) -> None:
    require_valid(validate_object_id(inquiry_id, "id"), "Invalid inquiry id")


def get_inquiry_for_party(db: Session, inquiry_id: str, user_id: str) -> Inquiry:
    """Load an inquiry the user takes part in (buyer or seller)."""
    _require_id(inquiry_id)
    inquiry = db.query(Inquiry).filter(Inquiry.id == inquiry_id).first()
    if inquiry is None:
        raise InquiryNotFound()
    if user_id not in (inquiry.buyer_id, inquiry.seller_id):
        raise Forbidden("You are not allowed to view this inquiry")
    return inquiry


def get_inquiry_for_seller(db: Session, inquiry_id: str, seller_id: str) -> Inquiry:
    """Load an inquiry addressed to this seller; others get a plain not-found."""
    _require_id(inquiry_id)
    inquiry = db.query(Inquiry).filter(Inquiry.id == inquiry_id, Inquiry.seller_id == seller_id).first()
    if inquiry is None:
        raise InquiryNotFound("Inquiry not found or you are not allowed to modify it")
    return inquiry


def authorize_transition(inquiry: Inquiry, user_id: str, target: str) -> None:
    if user_id == inquiry.seller_id and target in SELLER_TARGETS:
        return
    if user_id == inquiry.buyer_id and target in BUYER_TARGETS:
        return
    raise Forbidden(f"You are not allowed to set this inquiry to {target}")


def _page(query, skip: int, limit: int) -> Tuple[List[Inquiry], int]:
    total = query.count()
    items = query.order_by(Inquiry.created_at.desc(), Inquiry.id.desc()).offset(skip).limit(limit).all()
    return items, total


def list_for_buyer(db: Session, buyer_id: str, skip: int = 0, limit: int = 10) -> Tuple[List[Inquiry], int]:
    return _page(db.query(Inquiry).filter(Inquiry.buyer_id == buyer_id), skip, limit)


def list_for_seller(db: Session, seller_id: str, skip: int = 0, limit: int = 10) -> Tuple[List[Inquiry], int]:
    return _page(db.query(Inquiry).filter(Inquiry.seller_id == seller_id), skip, limit)


def _status_counts(db: Session, column, party_id: str) -> Dict[str, int]:
    rows = (
        db.query(Inquiry.status, func.count(Inquiry.id))
        .filter(column == party_id)
        .group_by(Inquiry.status)
        .all()
    )
    return {status: count for status, count in rows}


def buyer_stats(db: Session, buyer_id: str) -> Dict[str, int]:
    return _status_counts(db, Inquiry.buyer_id, buyer_id)


def seller_stats(db: Session, seller_id: str) -> Dict[str, int]:
    return _status_counts(db, Inquiry.seller_id, seller_id)


def pending_count(db: Session, seller_id: str) -> int:
    return db.query(Inquiry).filter(Inquiry.seller_id == seller_id, Inquiry.status == "pending").count()
