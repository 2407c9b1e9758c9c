from datetime import datetime, timedelta

from delivery_core.db import db_session
from delivery_core.models import (
    READY,
    CourierActiveOrder,
    CourierPresence,
    DeliveryZone,
    DispatchOffer,
    DynamicFee,
    Order,
    Promotion,
    Restaurant,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)

# Avenida Paulista, Sao Paulo
RESTAURANT_LAT = -23.5614
RESTAURANT_LNG = -46.6559


def zone(**kw):
    values = dict(
        name="Center",
        polygon=None,
        max_distance_km=10.0,
        base_fee=5.99,
        per_km_rate=1.20,
        min_time_minutes=25,
        is_active=True,
    )
    values.update(kw)
    return DeliveryZone(**values)


def fee_rule(**kw):
    values = dict(
        name="Rule",
        type="distance",
        conditions={},
        fee_type="fixed",
        fee_value=1.0,
        min_order_value=0.0,
        max_order_value=None,
        priority=0,
        is_active=True,
        valid_until=None,
    )
    values.update(kw)
    return DynamicFee(**values)


def promotion(**kw):
    values = dict(
        code="SAVE10",
        type="percentage",
        discount_value=10.0,
        max_discount_amount=None,
        min_order_value=0.0,
        usage_limit=None,
        usage_limit_per_user=None,
        usage_count=0,
        valid_until=NOW + timedelta(days=30),
        is_active=True,
    )
    values.update(kw)
    return Promotion(**values)


def add(*objs):
    with db_session() as db:
        db.add_all(objs)
    return objs[0] if len(objs) == 1 else objs


def restaurant(restaurant_id="r_1", lat=RESTAURANT_LAT, lng=RESTAURANT_LNG, name="Pizza Place"):
    return add(Restaurant(id=restaurant_id, name=name, owner_id="owner_1", lat=lat, lng=lng))


def order(order_id="or_1", restaurant_id="r_1", status=READY, courier_id=None, total_cents=5000, created_at=NOW):
    return add(
        Order(
            id=order_id,
            user_id="customer_1",
            restaurant_id=restaurant_id,
            courier_id=courier_id,
            status=status,
            total_cents=total_cents,
            delivery_address={"street": "Rua Augusta 100", "lat": -23.55, "lng": -46.65},
            created_at=created_at,
            updated_at=created_at,
        )
    )


def offer(offer_id, courier_id, order_id="or_1", status="PENDING", expires_at=None, eta_minutes=6):
    return add(
        DispatchOffer(
            id=offer_id,
            order_id=order_id,
            courier_id=courier_id,
            status=status,
            expires_at=expires_at or NOW + timedelta(seconds=45),
            estimated_earnings_cents=500,
            distance_km=1.2,
            eta_minutes=eta_minutes,
            created_at=NOW,
        )
    )


def presence(courier_id, lat, lng, online=True, last_seen=NOW):
    return add(CourierPresence(courier_id=courier_id, is_online=online, lat=lat, lng=lng, last_seen=last_seen))


def busy(courier_id, count, restaurant_id="r_1"):
    """Give a courier `count` active deliveries on fresh assigned orders."""
    for i in range(count):
        order(f"busy_{courier_id}_{i}", restaurant_id=restaurant_id, status="courier_assigned", courier_id=courier_id)
        add(CourierActiveOrder(courier_id=courier_id, order_id=f"busy_{courier_id}_{i}", sequence_order=i + 1))
