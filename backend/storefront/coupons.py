from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import documents
from .pricing import as_number

COUPONS = "coupons"
USAGE_LOGS = "coupon_usage_logs"


class CouponError(Exception):
    pass


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def check_usage(coupon: Dict[str, Any], now: Optional[datetime] = None) -> None:
    """Checks that depend only on the coupon record (state, expiry, usage limits)."""
    now = now or datetime.now(timezone.utc)
    if not coupon.get("isActive"):
        raise CouponError("This coupon is no longer active")
    expires = parse_datetime(coupon.get("expiresAt"))
    if expires is not None and expires <= now:
        raise CouponError("This coupon has expired")
    used = int(as_number(coupon.get("usedCount")) or 0)
    usage_type = coupon.get("usageType")
    if usage_type == "limited":
        limit = as_number(coupon.get("usageLimit"))
        if limit is not None and used >= limit:
            raise CouponError("This coupon has reached its usage limit")
    if usage_type == "single" and used >= 1:
        raise CouponError("This coupon has already been used")


def check_coupon(
    coupon: Dict[str, Any],
    order_amount: float,
    customer_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    check_usage(coupon, now)
    if coupon.get("targetType") == "specific":
        if not customer_email:
            raise CouponError("Please enter your email to use this coupon")
        target = str(coupon.get("targetEmail") or "").strip().lower()
        if target != customer_email.strip().lower():
            raise CouponError("This coupon is not valid for your email address")
    min_amount = as_number(coupon.get("minAmount")) or 0
    if min_amount > 0 and order_amount < min_amount:
        raise CouponError(f"Minimum order amount of €{min_amount:.2f} required")
    max_amount = as_number(coupon.get("maxAmount")) or 0
    if max_amount > 0 and order_amount > max_amount:
        raise CouponError(f"Maximum order amount of €{max_amount:.2f} exceeded")


async def find_by_code(db: AsyncSession, code: str) -> Optional[Dict[str, Any]]:
    want = (code or "").strip().upper()
    for coupon in await documents.read_all(db, COUPONS):
        if str(coupon.get("code") or "").strip().upper() == want:
            return coupon
    return None


async def record_usage(db: AsyncSession, coupon: Dict[str, Any], customer_email: Optional[str]) -> Dict[str, Any]:
    """Increment the usage counter; returns the updated coupon."""
    now = documents.now_iso()
    updated = {
        **coupon,
        "usedCount": int(as_number(coupon.get("usedCount")) or 0) + 1,
        "lastUsedAt": now,
        "lastUsedBy": customer_email or "anonymous",
        "updatedAt": now,
    }
    await documents.update(db, coupon["id"], updated, COUPONS)
    return updated


async def log_usage(
    db: AsyncSession,
    coupon: Dict[str, Any],
    order_id: str,
    customer_email: Optional[str],
    order_amount: float,
    discount_amount: float,
) -> Dict[str, Any]:
    return await documents.create(db, {
        "couponId": coupon["id"],
        "couponCode": coupon.get("code"),
        "orderId": order_id,
        "customerEmail": customer_email or "anonymous",
        "orderAmount": order_amount,
        "discountAmount": discount_amount,
        "usedAt": documents.now_iso(),
    }, USAGE_LOGS)
