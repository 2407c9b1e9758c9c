from __future__ import annotations

from datetime import datetime
from typing import List, Dict, Literal, Optional

from pydantic import BaseModel, Field


# ----------------------
# Quotes
# ----------------------


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class CartLine(BaseModel):
    id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    restaurant_id: str


class QuoteIn(BaseModel):
    origin: GeoPoint
    destination: GeoPoint
    cart: List[CartLine]
    coupon_code: Optional[str] = None
    user_id: Optional[str] = None


class AppliedFee(BaseModel):
    name: str
    type: str
    amount: float
    description: str


class DeliveryQuote(BaseModel):
    subtotal: float
    delivery_fee: float
    dynamic_fees: List[AppliedFee]
    discount: float
    discount_description: str = ""
    subscription_discount: float
    total: float
    estimated_time_minutes: int
    distance_km: float
    zone_name: str


class ConditionSignals(BaseModel):
    """Externally observed conditions that weather/demand fee rules key on."""

    weather: Optional[str] = None
    high_demand: bool = False


class CouponRedeemIn(BaseModel):
    code: str
    subtotal: Optional[float] = Field(None, ge=0)
    order_id: Optional[str] = None


class CouponRedeemOut(BaseModel):
    promotion_id: str
    code: str
    usage_count: int


class ZoneOut(BaseModel):
    id: str
    name: str
    max_distance_km: float
    base_fee: float
    per_km_rate: float
    min_time_minutes: int


# ----------------------
# Dispatch
# ----------------------


class CreateOffersIn(BaseModel):
    order_id: str


class OfferOut(BaseModel):
    offer_id: str
    courier_id: str
    distance_km: float
    eta_minutes: int
    estimated_earnings_cents: int
    expires_at: datetime


class CreateOffersOut(BaseModel):
    success: bool
    order_id: str
    couriers_found: int
    offers: List[OfferOut]
    message: Optional[str] = None


class AnswerIn(BaseModel):
    offer_id: str
    action: Literal["ACCEPT", "DECLINE"]


class RestaurantInfo(BaseModel):
    name: str
    lat: Optional[float] = None
    lng: Optional[float] = None


class AnswerOut(BaseModel):
    success: bool
    action: Literal["ACCEPTED", "DECLINED"]
    offer_id: str
    order_id: Optional[str] = None
    earnings_cents: Optional[int] = None
    pickup_eta_minutes: Optional[int] = None
    restaurant: Optional[RestaurantInfo] = None
    delivery_address: Optional[Dict] = None
    sequence_order: Optional[int] = None


class ExpireOut(BaseModel):
    expired: int


class StackingIn(BaseModel):
    courier_id: str
    max_orders: int = Field(3, ge=1)
    max_distance_km: float = Field(2.0, gt=0)


class ActiveOrderOut(BaseModel):
    order_id: str
    sequence_order: int
    status: str
    restaurant_name: Optional[str] = None


class StackingSuggestion(BaseModel):
    order_id: str
    restaurant_name: str
    distance_to_restaurant_km: float
    estimated_pickup_time: int
    estimated_earnings_cents: int
    priority_score: float


class RouteStop(BaseModel):
    order_id: str
    sequence: int
    type: Literal["current", "suggested"]


class OptimizedRoute(BaseModel):
    sequence: List[RouteStop]
    estimated_total_time_minutes: int
    estimated_total_distance_km: float


class StackingOut(BaseModel):
    success: bool = True
    courier_id: str
    current_orders: List[ActiveOrderOut]
    available_suggestions: int
    suggestions: List[StackingSuggestion]
    optimized_route: Optional[OptimizedRoute] = None
    max_capacity: int
    message: Optional[str] = None


# ----------------------
# Couriers
# ----------------------


class LocationPingIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    battery_pct: Optional[int] = Field(None, ge=0, le=100)


class LocationPingOut(BaseModel):
    success: bool
    courier_id: str
    last_seen: datetime


# ----------------------
# Routing
# ----------------------


class RoutingEstimateResponse(BaseModel):
    fromLat: float
    fromLng: float
    toLat: float
    toLng: float
    distanceKm: float
    durationMin: int
    polyline: Optional[str] = None
    provider: str
