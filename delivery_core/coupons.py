from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select, update

from .errors import (
    CouponBelowMinimum,
    CouponExhausted,
    CouponRejected,
    CouponUserLimit,
)
from .models import CouponUsage, Promotion

logger = logging.getLogger(__name__)


def find_promotion(db, code: str, now: datetime) -> Promotion | None:
    """Active, unexpired promotion whose code matches case-insensitively."""
    return (
        db.execute(
            select(Promotion).where(
                func.upper(Promotion.code) == code.strip().upper(),
                Promotion.is_active.is_(True),
                or_(Promotion.valid_until.is_(None), Promotion.valid_until >= now),
            )
        )
        .scalars()
        .first()
    )


def user_usage_count(db, promotion_id: str, user_id: str | None) -> int:
    if not user_id:
        return 0
    return db.execute(
        select(func.count(CouponUsage.id)).where(
            CouponUsage.promotion_id == promotion_id,
            CouponUsage.user_id == user_id,
        )
    ).scalar_one()


def check_promotion(promotion: Promotion | None, subtotal: float, user_uses: int = 0) -> Promotion:
    """
    Raise the specific CouponRejected subclass explaining why `promotion`
    cannot be used on this subtotal, or return it.
    """
    if promotion is None:
        raise CouponRejected("Invalid or expired coupon")
    if subtotal < promotion.min_order_value:
        raise CouponBelowMinimum(
            f"Minimum order value for this coupon: {promotion.min_order_value:.2f}",
            min_order_value=promotion.min_order_value,
        )
    if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
        raise CouponExhausted("Coupon usage limit reached")
    if promotion.usage_limit_per_user is not None and user_uses >= promotion.usage_limit_per_user:
        raise CouponUserLimit("You have already used this coupon the maximum number of times")
    return promotion


def coupon_discount(promotion: Promotion, subtotal: float, payable_delivery_fee: float) -> tuple[float, str]:
    """
    Discount granted by an already validated promotion.
    Returns (amount, human readable description).
    """
    if promotion.type == "percentage":
        amount = subtotal * promotion.discount_value / 100.0
        if promotion.max_discount_amount is not None:
            amount = min(amount, promotion.max_discount_amount)
        return amount, f"{promotion.discount_value:g}% off"

    if promotion.type == "fixed_amount":
        return min(promotion.discount_value, subtotal), f"{promotion.discount_value:.2f} off"

    if promotion.type == "free_delivery":
        cap = promotion.discount_value or payable_delivery_fee
        return max(0.0, min(payable_delivery_fee, cap)), "Free delivery"

    logger.warning("Promotion %s has unknown type %r", promotion.id, promotion.type)
    return 0.0, ""


def redeem_coupon(db, code: str, user_id: str, subtotal: float | None, now: datetime, order_id: str | None = None) -> Promotion:
    """
    Consume one use of a coupon at checkout.

    The global counter is bumped with a conditional UPDATE so two checkouts
    racing for the last use cannot both succeed.
    """
    promotion = find_promotion(db, code, now)
    uses = user_usage_count(db, promotion.id, user_id) if promotion else 0
    check_promotion(promotion, subtotal if subtotal is not None else float("inf"), uses)

    stmt = update(Promotion).where(Promotion.id == promotion.id)
    if promotion.usage_limit is not None:
        stmt = stmt.where(Promotion.usage_count < promotion.usage_limit)
    result = db.execute(
        stmt.values(usage_count=Promotion.usage_count + 1).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise CouponExhausted("Coupon usage limit reached")

    db.add(CouponUsage(promotion_id=promotion.id, user_id=user_id, order_id=order_id))
    db.flush()
    db.refresh(promotion)
    logger.info("Coupon %s redeemed by %s (uses=%s)", promotion.code, user_id, promotion.usage_count)
    return promotion
