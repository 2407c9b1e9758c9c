"""
Delivery quote engine.

`calculate_quote` loads the reference data (zones, fee rules, subscription,
promotion) and hands it to the pure helpers below, which do all of the
pricing. Nothing here writes to the database.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select

from .config import settings
from .coupons import check_promotion, coupon_discount, find_promotion, user_usage_count
from .errors import InvalidRequest, ZoneNotFound
from .geo import haversine_km, point_in_polygon
from .models import DeliveryZone, DynamicFee, Setting, SubscriptionPlan, UserSubscription
from .schemas import AppliedFee, CartLine, ConditionSignals, DeliveryQuote, QuoteIn

logger = logging.getLogger(__name__)

MINUTES_PER_KM = 2
MINUTES_PER_DYNAMIC_FEE = 5

FEE_DESCRIPTIONS = {
    "weather": "Fee applied due to weather conditions",
    "time": "Peak hour fee",
    "distance": "Long distance fee",
    "demand": "High demand fee",
}


def money(value: float) -> float:
    return round(value, 2)


def cart_subtotal(cart: Iterable[CartLine]) -> float:
    return sum(line.price * line.quantity for line in cart)


def resolve_zone(zones: Sequence[DeliveryZone], lat: float, lng: float, distance_km: float) -> DeliveryZone:
    """First active zone covering the distance whose polygon holds the point."""
    for zone in zones:
        if distance_km <= zone.max_distance_km and point_in_polygon(lat, lng, zone.polygon):
            return zone
    raise ZoneNotFound(
        "Address is outside the delivery area",
        available_zones=[z.name for z in zones],
    )


def base_delivery_fee(zone: DeliveryZone, distance_km: float) -> float:
    return zone.base_fee + distance_km * zone.per_km_rate


def local_hour(now: datetime) -> int:
    return now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(settings.MARKET_TIMEZONE)).hour


def _condition_met(rule: DynamicFee, distance_km: float, hour: int, signals: ConditionSignals) -> bool:
    conditions = rule.conditions or {}
    if rule.type == "time":
        return hour in (conditions.get("hours") or [])
    if rule.type == "distance":
        return distance_km >= (conditions.get("min_km") or 0)
    if rule.type == "weather":
        return signals.weather is not None and signals.weather == conditions.get("weather")
    if rule.type == "demand":
        return signals.high_demand
    return False


def _fee_amount(rule: DynamicFee, subtotal: float, distance_km: float) -> float:
    if rule.fee_type == "fixed":
        return rule.fee_value
    if rule.fee_type == "percentage":
        return subtotal * rule.fee_value / 100.0
    if rule.fee_type == "per_km":
        return distance_km * rule.fee_value
    return 0.0


def apply_dynamic_fees(
    rules: Iterable[DynamicFee],
    subtotal: float,
    distance_km: float,
    now: datetime,
    signals: ConditionSignals,
) -> tuple[float, list[AppliedFee]]:
    """
    Evaluate every active rule, highest priority first. Fees stack.
    Returns (total surcharge, applied line items).
    """
    hour = local_hour(now)
    total = 0.0
    applied: list[AppliedFee] = []
    for rule in sorted(rules, key=lambda r: r.priority or 0, reverse=True):
        if rule.is_active is False or rule.fee_value < 0:
            continue
        if subtotal < (rule.min_order_value or 0):
            continue
        if rule.max_order_value is not None and subtotal > rule.max_order_value:
            continue
        if rule.valid_until is not None and rule.valid_until < now:
            continue
        if not _condition_met(rule, distance_km, hour, signals):
            continue

        amount = _fee_amount(rule, subtotal, distance_km)
        total += amount
        applied.append(
            AppliedFee(
                name=rule.name,
                type=rule.type,
                amount=money(amount),
                description=FEE_DESCRIPTIONS.get(rule.type, rule.name),
            )
        )
    return total, applied


def subscription_discount(benefits: dict | None, subtotal: float, delivery_fee: float) -> tuple[float, bool]:
    """
    Returns (discount, covers_delivery). Free delivery wins over the
    percentage benefit when the order is large enough.
    """
    if not benefits:
        return 0.0, False
    if benefits.get("free_delivery") and subtotal >= (benefits.get("min_order_free_delivery") or 0):
        return delivery_fee, True
    if benefits.get("discount_percentage"):
        return subtotal * benefits["discount_percentage"] / 100.0, False
    return 0.0, False


def estimate_minutes(zone: DeliveryZone, distance_km: float, applied_fees: int) -> int:
    return zone.min_time_minutes + math.ceil(distance_km * MINUTES_PER_KM) + applied_fees * MINUTES_PER_DYNAMIC_FEE


def price_quote(
    subtotal: float,
    distance_km: float,
    zone: DeliveryZone,
    rules: Iterable[DynamicFee],
    now: datetime,
    signals: ConditionSignals | None = None,
    benefits: dict | None = None,
    promotion=None,
    coupon_requested: bool = False,
    user_uses: int = 0,
) -> DeliveryQuote:
    """Assemble a quote from already-loaded reference data."""
    signals = signals or ConditionSignals()

    delivery_fee = base_delivery_fee(zone, distance_km)
    surcharge, applied = apply_dynamic_fees(rules, subtotal, distance_km, now, signals)
    delivery_fee += surcharge

    sub_discount, covers_delivery = subscription_discount(benefits, subtotal, delivery_fee)

    discount = 0.0
    description = ""
    if coupon_requested:
        check_promotion(promotion, subtotal, user_uses)
        payable_fee = delivery_fee - sub_discount if covers_delivery else delivery_fee
        discount, description = coupon_discount(promotion, subtotal, payable_fee)
        if promotion.type != "free_delivery":
            # only what the subscription left of the subtotal can be discounted
            remaining = money(subtotal) if covers_delivery else money(money(subtotal) - money(sub_discount))
            discount = min(discount, max(0.0, remaining))

    subtotal_r = money(subtotal)
    fee_r = money(delivery_fee)
    discount_r = money(discount)
    sub_r = money(sub_discount)
    return DeliveryQuote(
        subtotal=subtotal_r,
        delivery_fee=fee_r,
        dynamic_fees=applied,
        discount=discount_r,
        discount_description=description,
        subscription_discount=sub_r,
        total=money(subtotal_r + fee_r - discount_r - sub_r),
        estimated_time_minutes=estimate_minutes(zone, distance_km, len(applied)),
        distance_km=money(distance_km),
        zone_name=zone.name,
    )


# ----------------------
# Loading
# ----------------------


def load_signals(db) -> ConditionSignals:
    rec = db.get(Setting, "signals")
    if rec:
        return ConditionSignals(**rec.value)
    # Fallback to env defaults if row missing
    return ConditionSignals(weather=settings.DEFAULT_WEATHER, high_demand=settings.DEFAULT_HIGH_DEMAND)


def save_signals(db, signals: ConditionSignals) -> ConditionSignals:
    rec = db.get(Setting, "signals")
    if rec:
        rec.value = signals.model_dump()
    else:
        db.add(Setting(key="signals", value=signals.model_dump()))
    db.flush()
    return signals


def active_zones(db) -> list[DeliveryZone]:
    return list(
        db.execute(
            select(DeliveryZone).where(DeliveryZone.is_active.is_(True)).order_by(DeliveryZone.id)
        ).scalars()
    )


def active_fee_rules(db, now: datetime) -> list[DynamicFee]:
    return list(
        db.execute(
            select(DynamicFee)
            .where(
                DynamicFee.is_active.is_(True),
                DynamicFee.fee_value >= 0,
                or_(DynamicFee.valid_until.is_(None), DynamicFee.valid_until >= now),
            )
            .order_by(DynamicFee.priority.desc())
        ).scalars()
    )


def subscription_benefits(db, user_id: str | None, now: datetime) -> dict | None:
    if not user_id:
        return None
    row = db.execute(
        select(SubscriptionPlan.benefits)
        .join(UserSubscription, UserSubscription.plan_id == SubscriptionPlan.id)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.status == "active",
            UserSubscription.current_period_end >= now,
        )
        .order_by(UserSubscription.current_period_end.desc())
    ).first()
    return row[0] if row else None


def calculate_quote(db, payload: QuoteIn, now: datetime, signals: ConditionSignals | None = None) -> DeliveryQuote:
    if not payload.cart:
        raise InvalidRequest("Origin, destination, and cart are required")

    subtotal = cart_subtotal(payload.cart)
    distance_km = haversine_km(
        payload.origin.lat, payload.origin.lng, payload.destination.lat, payload.destination.lng
    )
    zone = resolve_zone(active_zones(db), payload.destination.lat, payload.destination.lng, distance_km)

    promotion = None
    user_uses = 0
    if payload.coupon_code:
        promotion = find_promotion(db, payload.coupon_code, now)
        if promotion is not None:
            user_uses = user_usage_count(db, promotion.id, payload.user_id)

    quote = price_quote(
        subtotal,
        distance_km,
        zone,
        active_fee_rules(db, now),
        now,
        signals=signals or load_signals(db),
        benefits=subscription_benefits(db, payload.user_id, now),
        promotion=promotion,
        coupon_requested=bool(payload.coupon_code),
        user_uses=user_uses,
    )
    logger.debug("Quoted %.2f km in %s: total=%.2f", distance_km, zone.name, quote.total)
    return quote
