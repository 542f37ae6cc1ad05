"""
Coupon Engine for ZKNON prepaid SOL coupons

This module provides:
- Owner-scoped coupons with an initial and remaining SOL balance
- Deposits, off-chain payments and on-chain withdrawals
- An append-only event history per coupon
- JSON file storage with logged fallback on corrupt data
- Solana transfers from the engine wallet for withdrawals
"""

from .models import (
    EventType,
    Coupon,
    CouponEvent,
    CouponHistory,
)
from .service import CouponLedger
from .store import JsonFileStore

__all__ = [
    "EventType",
    "Coupon",
    "CouponEvent",
    "CouponHistory",
    "CouponLedger",
    "JsonFileStore",
]
