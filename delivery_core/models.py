from datetime import datetime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import Integer, String, Float, DateTime, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy import JSON
from .util import gen_id, utcnow


class Base(DeclarativeBase): pass


# order lifecycle
PLACED = "placed"
CONFIRMED = "confirmed"
PREPARING = "preparing"
READY = "ready"
COURIER_ASSIGNED = "courier_assigned"
EN_ROUTE_TO_STORE = "en_route_to_store"
PICKED_UP = "picked_up"
OUT_FOR_DELIVERY = "out_for_delivery"
ARRIVED_AT_DESTINATION = "arrived_at_destination"
DELIVERED = "delivered"
CANCELLED = "cancelled"

# dispatch offer lifecycle
OFFER_PENDING = "PENDING"
OFFER_ACCEPTED = "ACCEPTED"
OFFER_DECLINED = "DECLINED"
OFFER_EXPIRED = "EXPIRED"
OFFER_CANCELLED = "CANCELLED"


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[dict] = mapped_column(JSON)  # stores a JSON blob


# ----------------------
# Pricing reference data
# ----------------------


class DeliveryZone(Base):
    __tablename__ = "delivery_zones"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("z"))
    name: Mapped[str] = mapped_column(String)
    # list of [lat, lng] vertices; empty means "anything within max distance"
    polygon: Mapped[list | None] = mapped_column(JSON, nullable=True)
    max_distance_km: Mapped[float] = mapped_column(Float)
    base_fee: Mapped[float] = mapped_column(Float)
    per_km_rate: Mapped[float] = mapped_column(Float)
    min_time_minutes: Mapped[int] = mapped_column(Integer, default=20)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DynamicFee(Base):
    __tablename__ = "dynamic_fees"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("df"))
    name: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String)  # time | distance | weather | demand
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)
    fee_type: Mapped[str] = mapped_column(String)  # fixed | percentage | per_km
    fee_value: Mapped[float] = mapped_column(Float)
    min_order_value: Mapped[float] = mapped_column(Float, default=0.0)
    max_order_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Promotion(Base):
    __tablename__ = "promotions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("pr"))
    code: Mapped[str] = mapped_column(String, unique=True)
    type: Mapped[str] = mapped_column(String)  # percentage | fixed_amount | free_delivery
    discount_value: Mapped[float] = mapped_column(Float, default=0.0)
    max_discount_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_order_value: Mapped[float] = mapped_column(Float, default=0.0)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_limit_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CouponUsage(Base):
    __tablename__ = "coupon_usage"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    promotion_id: Mapped[str] = mapped_column(ForeignKey("promotions.id"))
    user_id: Mapped[str] = mapped_column(String)
    order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("plan"))
    name: Mapped[str] = mapped_column(String)
    benefits: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sub"))
    user_id: Mapped[str] = mapped_column(String, index=True)
    plan_id: Mapped[str] = mapped_column(ForeignKey("subscription_plans.id"))
    status: Mapped[str] = mapped_column(String, default="active")
    current_period_end: Mapped[datetime] = mapped_column(DateTime)


# ----------------------
# Marketplace
# ----------------------


class Profile(Base):
    __tablename__ = "profiles"
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[str] = mapped_column(String, default="customer")


class Restaurant(Base):
    __tablename__ = "restaurants"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("r"))
    name: Mapped[str] = mapped_column(String)
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("or"))
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"))
    courier_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, default=PLACED)
    total_cents: Mapped[int] = mapped_column(Integer, default=0)
    delivery_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ----------------------
# Dispatch
# ----------------------


class DispatchOffer(Base):
    __tablename__ = "dispatch_offers"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("of"))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    courier_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default=OFFER_PENDING)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    estimated_earnings_cents: Mapped[int] = mapped_column(Integer, default=0)
    distance_km: Mapped[float] = mapped_column(Float, default=0.0)
    eta_minutes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class CourierActiveOrder(Base):
    __tablename__ = "courier_active_orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    courier_id: Mapped[str] = mapped_column(String, index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), unique=True)
    sequence_order: Mapped[int] = mapped_column(Integer)
    distance_km: Mapped[float] = mapped_column(Float, default=0.0)
    pickup_eta: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CourierEarning(Base):
    __tablename__ = "courier_earnings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    courier_id: Mapped[str] = mapped_column(String, index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"))
    amount_cents: Mapped[int] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String, default="BASE")
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_date: Mapped[str] = mapped_column(String)  # YYYY-MM-DD


class OrderEvent(Base):
    __tablename__ = "order_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    status: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str] = mapped_column(String, default="system")
    notes: Mapped[str | None] = mapped_column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CourierPresence(Base):
    __tablename__ = "courier_presence"
    courier_id: Mapped[str] = mapped_column(String, primary_key=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    battery_pct: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"
    __table_args__ = (UniqueConstraint("key", "window_start"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String)
    window_start: Mapped[datetime] = mapped_column(DateTime)
    hits: Mapped[int] = mapped_column(Integer, default=0)
