#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Utility functions for the Industrial Marketplace

Functions:
- new_object_id: Generate a 24-hex-character document identifier
- is_object_id: Check an identifier against the 24-hex pattern
- round_money: Round a price to 2 decimals (half-up)
- floor_quantity: Truncate a quantity to a whole number
- utcnow: Naive UTC timestamp used for every stored datetime
- paginate: Normalize page/limit query values
"""

import math
import re
import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")

_CENT = Decimal("0.01")


def new_object_id() -> str:
    """
    Generate an opaque 24-hex-character identifier.

    Layout follows the usual document-store convention: 4 bytes of seconds
    since the epoch followed by 8 random bytes, so ids sort roughly by
    creation time.

    Example:
        >>> len(new_object_id())
        24
    """
    return f"{int(time.time()) & 0xFFFFFFFF:08x}{secrets.token_hex(8)}"


def is_object_id(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(OBJECT_ID_PATTERN.match(value))


def round_money(value: Optional[float]) -> Optional[float]:
    """
    Round a monetary amount to 2 decimals.

    Rounds half-up on the decimal text of the number, so values that look
    like an exact half are treated as one regardless of binary float error.

    Example:
        >>> round_money(199.995)
        200.0
        >>> round_money(0.125)
        0.13
    """
    if value is None:
        return None
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def floor_quantity(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(math.floor(value))


def utcnow() -> datetime:
    # Stored naive so values round-trip through SQLite unchanged
    return datetime.now(timezone.utc).replace(tzinfo=None)


def paginate(page: Optional[int], limit: Optional[int], default_limit: int = 10) -> Tuple[int, int, int]:
    """
    Normalize pagination input.

    Returns:
        (page, limit, skip) with page >= 1 and limit >= 1
    """
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    return page, limit, (page - 1) * limit


def pagination_block(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }
