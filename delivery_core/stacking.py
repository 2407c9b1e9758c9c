from __future__ import annotations

from datetime import datetime

from sqlalchemy import select

from .config import settings
from .dispatch import estimated_earnings_cents
from .errors import CourierUnavailable
from .geo import haversine_km, minutes_at_speed
from .models import READY, CourierActiveOrder, CourierPresence, Order, Restaurant
from .schemas import (
    ActiveOrderOut,
    OptimizedRoute,
    RouteStop,
    StackingOut,
    StackingSuggestion,
)


def priority_score(distance_km: float, minutes_waiting: float, order_value: float) -> float:
    """
    Closer, longer-waiting and larger orders rank first.
    order_value is in currency units, not cents.
    """
    proximity = max(0.0, 10 - distance_km * 2)
    urgency = min(max(minutes_waiting, 0.0) / 10, 10)
    return proximity + urgency + order_value * 0.1


def _route(courier_lat: float, courier_lng: float, current: list, suggested: list) -> OptimizedRoute:
    """
    Append-only sequence: current orders in their sequence, then suggestions
    by rank. Distance is summed leg by leg between restaurants.
    """
    stops = [(o, "current") for o in current] + [(o, "suggested") for o in suggested]
    total_km = 0.0
    here = (courier_lat, courier_lng)
    sequence = []
    for i, ((order_id, lat, lng), kind) in enumerate(stops, start=1):
        if lat is not None and lng is not None:
            total_km += haversine_km(here[0], here[1], lat, lng)
            here = (lat, lng)
        sequence.append(RouteStop(order_id=order_id, sequence=i, type=kind))

    minutes = minutes_at_speed(total_km, settings.PICKUP_SPEED_KMH) + len(stops) * settings.SERVICE_MINUTES_PER_STOP
    return OptimizedRoute(
        sequence=sequence,
        estimated_total_time_minutes=minutes,
        estimated_total_distance_km=round(total_km, 2),
    )


def suggest_stacking(
    db,
    courier_id: str,
    now: datetime,
    max_orders: int | None = None,
    max_distance_km: float | None = None,
) -> StackingOut:
    max_orders = max_orders or settings.STACKING_MAX_ORDERS
    max_distance_km = max_distance_km or settings.STACKING_MAX_DISTANCE_KM

    presence = db.get(CourierPresence, courier_id)
    if presence is None or not presence.is_online or presence.lat is None or presence.lng is None:
        raise CourierUnavailable("Courier is not online or location not available")

    active_rows = db.execute(
        select(CourierActiveOrder, Order, Restaurant)
        .join(Order, Order.id == CourierActiveOrder.order_id)
        .join(Restaurant, Restaurant.id == Order.restaurant_id)
        .where(CourierActiveOrder.courier_id == courier_id)
        .order_by(CourierActiveOrder.sequence_order)
    ).all()
    current_orders = [
        ActiveOrderOut(
            order_id=a.order_id,
            sequence_order=a.sequence_order,
            status=o.status,
            restaurant_name=r.name,
        )
        for a, o, r in active_rows
    ]

    if len(active_rows) >= max_orders:
        return StackingOut(
            courier_id=courier_id,
            current_orders=current_orders,
            available_suggestions=0,
            suggestions=[],
            max_capacity=max_orders,
            message="Courier already at maximum capacity",
        )

    candidates = db.execute(
        select(Order, Restaurant)
        .join(Restaurant, Restaurant.id == Order.restaurant_id)
        .where(Order.status == READY, Order.courier_id.is_(None))
        .order_by(Order.created_at)
        .limit(settings.STACKING_CANDIDATE_LIMIT)
    ).all()

    ranked = []
    for order, restaurant in candidates:
        if restaurant.lat is None or restaurant.lng is None:
            continue
        d = haversine_km(presence.lat, presence.lng, restaurant.lat, restaurant.lng)
        if d > max_distance_km:
            continue
        waiting = (now - order.created_at).total_seconds() / 60.0
        score = priority_score(d, waiting, order.total_cents / 100.0)
        ranked.append((score, d, order, restaurant))
    ranked.sort(key=lambda t: t[0], reverse=True)

    picked = ranked[: max_orders - len(active_rows)]
    suggestions = [
        StackingSuggestion(
            order_id=order.id,
            restaurant_name=restaurant.name,
            distance_to_restaurant_km=round(d, 2),
            estimated_pickup_time=minutes_at_speed(d, settings.PICKUP_SPEED_KMH),
            estimated_earnings_cents=estimated_earnings_cents(order.total_cents),
            priority_score=round(score, 2),
        )
        for score, d, order, restaurant in picked
    ]

    route = None
    if picked:
        route = _route(
            presence.lat,
            presence.lng,
            [(a.order_id, r.lat, r.lng) for a, o, r in active_rows],
            [(order.id, restaurant.lat, restaurant.lng) for _, _, order, restaurant in picked],
        )

    return StackingOut(
        courier_id=courier_id,
        current_orders=current_orders,
        available_suggestions=len(suggestions),
        suggestions=suggestions,
        optimized_route=route,
        max_capacity=max_orders,
        message=None if suggestions else "No additional orders available for stacking",
    )
