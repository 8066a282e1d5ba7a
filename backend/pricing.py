import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId


class OrderError(Exception):
    """Raised when an order cannot be placed; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CouponError(OrderError):
    pass


DISCOUNT_TYPES = {"percentage", "fixed"}


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def resolve_unit_price(price_option: Optional[Dict]) -> float:
    if not price_option:
        return 0.0
    sale_price = safe_float(price_option.get("sale_price"), 0.0)
    if sale_price > 0:
        return sale_price
    return safe_float(price_option.get("price"), 0.0)


def calculate_discount(coupon: Optional[Dict], subtotal: float) -> float:
    if not coupon:
        return 0.0

    value = max(safe_float(coupon.get("discount_value"), 0.0), 0.0)
    subtotal = max(safe_float(subtotal, 0.0), 0.0)
    if coupon.get("discount_type") == "percentage":
        discount = subtotal * min(value, 100.0) / 100
    else:
        discount = min(value, subtotal)
    return round(discount, 2)


def calculate_order_total(subtotal: float, shipping: float, discount: float) -> float:
    return round(max(0.0, (subtotal - discount) + shipping), 2)


def _same_id(left, right) -> bool:
    if left is None or right is None:
        return False
    return str(left) == str(right)


def times_used_by(coupon: Dict, user_id) -> int:
    for entry in coupon.get("used_by") or []:
        if isinstance(entry, dict) and _same_id(entry.get("user_id"), user_id):
            return safe_positive_int(entry.get("times_used"), 0)
    return 0


def coupon_rejection_reason(
    coupon: Optional[Dict],
    user_id,
    subtotal: float,
    product_ids: Iterable,
    now: Optional[datetime] = None,
) -> Optional[str]:
    if not coupon:
        return "Invalid coupon code"

    now = now or datetime.utcnow()
    start_at = coupon.get("start_at")
    expires_at = coupon.get("expires_at")

    if not coupon.get("is_active"):
        return "This coupon is no longer active."
    if not isinstance(start_at, datetime) or start_at > now:
        return "This coupon is not live yet."
    if not isinstance(expires_at, datetime) or expires_at <= now:
        return "This coupon has expired."
    if safe_positive_int(coupon.get("used_coupons"), 0) >= safe_positive_int(
        coupon.get("total_coupons"), 0
    ):
        return "This coupon has been fully redeemed."

    min_purchase = safe_float(coupon.get("min_purchase"), 0.0)
    if subtotal < min_purchase:
        return f"A minimum purchase of {min_purchase:.2f} is required for this coupon."
    max_purchase = coupon.get("max_purchase")
    if max_purchase and subtotal > safe_float(max_purchase, 0.0):
        return f"This coupon applies to orders up to {safe_float(max_purchase):.2f}."

    eligible_users = coupon.get("eligible_users") or []
    if eligible_users and not any(_same_id(uid, user_id) for uid in eligible_users):
        return "This coupon is not available for your account."

    eligible_products = coupon.get("eligible_products") or []
    ordered = list(product_ids)
    if eligible_products and not any(
        _same_id(pid, ordered_id) for pid in eligible_products for ordered_id in ordered
    ):
        return "None of the items in your cart are eligible for this coupon."

    max_uses = safe_positive_int(coupon.get("max_uses_per_user"), 1) or 1
    if times_used_by(coupon, user_id) >= max_uses:
        return "You have already used this coupon the maximum number of times."

    return None


def validate_coupon(coupon, user_id, subtotal, product_ids, now=None) -> Dict:
    reason = coupon_rejection_reason(coupon, user_id, subtotal, product_ids, now)
    if reason:
        raise CouponError(reason, 400)
    return coupon


def record_coupon_use(used_by: Optional[List[Dict]], user_id) -> List[Dict]:
    updated: List[Dict] = []
    found = False
    for entry in used_by or []:
        if not isinstance(entry, dict):
            continue
        entry = dict(entry)
        if _same_id(entry.get("user_id"), user_id):
            entry["times_used"] = safe_positive_int(entry.get("times_used"), 0) + 1
            found = True
        updated.append(entry)
    if not found:
        stored_id = user_id if isinstance(user_id, ObjectId) else ObjectId(str(user_id))
        updated.append({"user_id": stored_id, "times_used": 1})
    return updated
