#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Pure field validation for marketplace entities

Each validate_* function inspects plain values and returns a list of
{"field", "message", "value"} dicts; an empty list means the input is valid.
Nothing here touches the database, so callers decide when to raise
(see require_valid) and persistence never validates as a side effect.
"""

import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from utils import OBJECT_ID_PATTERN, floor_quantity

CATEGORIES = (
    "bearings",
    "fasteners",
    "motors",
    "transmission",
    "hydraulics",
    "pneumatics",
    "electrical",
    "tools",
    "other",
)
UNITS = ("piece", "unit", "set", "meter", "kg", "ton", "rod", "box", "pack")
URGENCY_LEVELS = ("low", "medium", "high")
REGISTRATION_ROLES = ("buyer", "seller")

MAX_PRICE = 1_000_000
MAX_IMAGES = 10
MAX_SPECIFICATIONS = 20
MAX_TAG_LENGTH = 20

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\u4e00-\u9fa5]+$")
PHONE_PATTERN = re.compile(r"^1[3-9]\d{9}$")
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")

FieldErrors = List[Dict[str, Any]]


def _error(field: str, message: str, value: Any = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"field": field, "message": message}
    if isinstance(value, (str, int, float, bool)):
        entry["value"] = value
    return entry


def require_valid(errors: FieldErrors, message: str = "Validation failed") -> None:
    if errors:
        raise ValidationError(message, errors=errors)


def is_number(value: Any) -> bool:
    """Finite int or float; bools, NaN and infinities are rejected."""
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


_EMAIL = TypeAdapter(EmailStr)


def is_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        _EMAIL.validate_python(value)
    except PydanticValidationError:
        return False
    return True


def _check_length(errors: FieldErrors, field: str, value: Optional[str], min_len: int, max_len: int,
                  required: bool = True) -> None:
    text = (value or "").strip() if isinstance(value, str) or value is None else None
    if text is None:
        errors.append(_error(field, f"{field} must be a string", value))
        return
    if not text:
        if required:
            errors.append(_error(field, f"{field} is required", value))
        return
    if len(text) < min_len or len(text) > max_len:
        errors.append(_error(field, f"{field} must be {min_len}-{max_len} characters", value))


def _check_range(errors: FieldErrors, field: str, value: Any, low: float, high: float,
                 required: bool = True) -> None:
    if value is None:
        if required:
            errors.append(_error(field, f"{field} is required"))
        return
    if not is_number(value) or value < low or value > high:
        errors.append(_error(field, f"{field} must be between {low:g} and {high:g}", value))


def validate_object_id(value: Any, field: str = "id") -> FieldErrors:
    if not isinstance(value, str) or not OBJECT_ID_PATTERN.match(value):
        return [_error(field, f"Invalid {field} format", value)]
    return []


def validate_inquiry_fields(quantity: Any, message: Any, expected_price: Any = None,
                            urgency: Optional[str] = None) -> FieldErrors:
    errors: FieldErrors = []
    if not is_number(quantity) or floor_quantity(quantity) < 1:
        errors.append(_error("quantity", "quantity must be at least 1", quantity))
    _check_length(errors, "message", message, 10, 500)
    _check_range(errors, "expectedPrice", expected_price, 0, MAX_PRICE, required=False)
    if urgency is not None and urgency not in URGENCY_LEVELS:
        errors.append(_error("urgency", "urgency must be one of: " + ", ".join(URGENCY_LEVELS), urgency))
    return errors


def validate_response_fields(message: Any, price: Any, delivery_time: Any) -> FieldErrors:
    errors: FieldErrors = []
    _check_length(errors, "message", message, 10, 1000)
    _check_range(errors, "price", price, 0, MAX_PRICE)
    _check_length(errors, "deliveryTime", delivery_time, 1, 100)
    return errors


def validate_buyer_contact(phone: Optional[str], email: Optional[str]) -> FieldErrors:
    errors: FieldErrors = []
    if phone and not PHONE_PATTERN.match(phone):
        errors.append(_error("buyerContact.phone", "Invalid phone number", phone))
    if email and not is_email(email):
        errors.append(_error("buyerContact.email", "Invalid email address", email))
    return errors


def _validate_tags(errors: FieldErrors, tags: Optional[Iterable[Any]]) -> None:
    for tag in tags or ():
        if not isinstance(tag, str) or len(tag.strip()) > MAX_TAG_LENGTH:
            errors.append(_error("tags", f"Tags must be strings of at most {MAX_TAG_LENGTH} characters", tag))


def validate_product_fields(data: Mapping[str, Any], partial: bool = False) -> FieldErrors:
    """
    Validate product fields.

    Args:
        data: Field values keyed by their Python attribute names
        partial: Only validate keys that are present (updates)
    """
    errors: FieldErrors = []

    def present(key: str) -> bool:
        return not partial or key in data

    if present("name"):
        _check_length(errors, "name", data.get("name"), 2, 100)
    if present("description"):
        _check_length(errors, "description", data.get("description"), 10, 1000)
    if present("category") and data.get("category") not in CATEGORIES:
        errors.append(_error("category", "Choose a valid category", data.get("category")))
    if present("unit") and data.get("unit") not in UNITS:
        errors.append(_error("unit", "Choose a valid unit", data.get("unit")))
    if present("price"):
        _check_range(errors, "price", data.get("price"), 0, MAX_PRICE)
    if present("stock"):
        stock = data.get("stock")
        if not isinstance(stock, int) or isinstance(stock, bool) or stock < 0:
            errors.append(_error("stock", "stock must be a non-negative integer", stock))
    if "min_order_quantity" in data and data.get("min_order_quantity") is not None:
        moq = data.get("min_order_quantity")
        if not isinstance(moq, int) or isinstance(moq, bool) or moq < 1:
            errors.append(_error("minOrderQuantity", "minOrderQuantity must be at least 1", moq))
    if len(data.get("images") or ()) > MAX_IMAGES:
        errors.append(_error("images", f"A product can have at most {MAX_IMAGES} images"))
    if len(data.get("specifications") or {}) > MAX_SPECIFICATIONS:
        errors.append(_error("specifications", f"A product can have at most {MAX_SPECIFICATIONS} specifications"))
    _validate_tags(errors, data.get("tags"))
    return errors


def validate_password(password: Any, field: str = "password") -> FieldErrors:
    if not isinstance(password, str) or len(password) < 6:
        return [_error(field, f"{field} must be at least 6 characters")]
    if not PASSWORD_PATTERN.match(password):
        return [_error(field, f"{field} needs an uppercase letter, a lowercase letter and a digit")]
    return []


def validate_registration(username: Any, email: Any, password: Any, company: Any,
                          phone: Optional[str] = None, role: Any = "buyer") -> FieldErrors:
    errors: FieldErrors = []
    if not isinstance(username, str) or not 3 <= len(username) <= 20:
        errors.append(_error("username", "username must be 3-20 characters", username))
    elif not USERNAME_PATTERN.match(username):
        errors.append(_error("username", "username may only contain letters, digits, underscores and CJK characters",
                             username))
    if not is_email(email):
        errors.append(_error("email", "Enter a valid email address", email))
    errors += validate_password(password)
    _check_length(errors, "company", company, 1, 100)
    if phone and not PHONE_PATTERN.match(phone):
        errors.append(_error("phone", "Enter a valid phone number", phone))
    if role not in REGISTRATION_ROLES:
        errors.append(_error("role", "role must be buyer or seller", role))
    return errors


def validate_profile_update(company: Any, phone: Optional[str]) -> FieldErrors:
    errors: FieldErrors = []
    if company is not None:
        _check_length(errors, "company", company, 1, 100)
    if phone and not PHONE_PATTERN.match(phone):
        errors.append(_error("phone", "Enter a valid phone number", phone))
    return errors
