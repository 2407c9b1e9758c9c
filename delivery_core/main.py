from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import CurrentUser, get_current_user
from .bootstrap import bootstrap
from .config import settings
from .coupons import redeem_coupon
from .db import db_session
from .dispatch import answer_offer, create_offers, expire_stale_offers, sweep_forever
from .errors import AccessDenied, DeliveryError
from .events import Publisher, get_publisher
from .models import CourierPresence
from .quoting import active_zones, calculate_quote, load_signals, save_signals
from .ratelimit import hit
from .routing import estimate_route
from .schemas import (
    AnswerIn,
    AnswerOut,
    ConditionSignals,
    CouponRedeemIn,
    CouponRedeemOut,
    CreateOffersIn,
    CreateOffersOut,
    DeliveryQuote,
    ExpireOut,
    LocationPingIn,
    LocationPingOut,
    QuoteIn,
    RoutingEstimateResponse,
    StackingIn,
    StackingOut,
    ZoneOut,
)
from .stacking import suggest_stacking
from .util import utcnow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bootstrap()
    task = None
    if settings.OFFER_SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(sweep_forever(settings.OFFER_SWEEP_INTERVAL_SECONDS))
    try:
        yield
    finally:
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


app = FastAPI(title="Delivery Core API", lifespan=lifespan)


# ----------------------
# CORS
# ----------------------

origins = ["*"]
if settings.APP_DOMAIN:
    origins = [f"https://{settings.APP_DOMAIN}", f"http://{settings.APP_DOMAIN}"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Errors
# ----------------------


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in e["loc"] if p != "body") for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "code": "invalid_request", "fields": fields},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "internal"})


def require_role(user: CurrentUser, *roles: str):
    if user.is_admin or user.role in roles:
        return
    raise AccessDenied("Access denied")


# ----------------------
# Quotes & coupons
# ----------------------


@app.post("/quotes", response_model=DeliveryQuote)
def quote(payload: QuoteIn):
    with db_session() as db:
        return calculate_quote(db, payload, utcnow())


@app.post("/coupons/redeem", response_model=CouponRedeemOut)
def coupons_redeem(body: CouponRedeemIn, user: CurrentUser = Depends(get_current_user)):
    with db_session() as db:
        promotion = redeem_coupon(db, body.code, user.id, body.subtotal, utcnow(), order_id=body.order_id)
        return CouponRedeemOut(promotion_id=promotion.id, code=promotion.code, usage_count=promotion.usage_count)


@app.get("/zones", response_model=List[ZoneOut])
def list_zones():
    with db_session() as db:
        return [
            ZoneOut(
                id=z.id,
                name=z.name,
                max_distance_km=z.max_distance_km,
                base_fee=z.base_fee,
                per_km_rate=z.per_km_rate,
                min_time_minutes=z.min_time_minutes,
            )
            for z in active_zones(db)
        ]


@app.get("/signals", response_model=ConditionSignals)
def get_signals():
    with db_session() as db:
        return load_signals(db)


@app.put("/signals", response_model=ConditionSignals)
def update_signals(payload: ConditionSignals, user: CurrentUser = Depends(get_current_user)):
    require_role(user)
    with db_session() as db:
        return save_signals(db, payload)


# ----------------------
# Dispatch
# ----------------------


@app.post("/dispatch/offers", response_model=CreateOffersOut)
def dispatch_offers(
    body: CreateOffersIn,
    user: CurrentUser = Depends(get_current_user),
    publisher: Publisher = Depends(get_publisher),
):
    require_role(user, "restaurant")
    return create_offers(body.order_id, publisher=publisher)


@app.post("/dispatch/answer", response_model=AnswerOut)
def dispatch_answer(
    body: AnswerIn,
    user: CurrentUser = Depends(get_current_user),
    publisher: Publisher = Depends(get_publisher),
):
    return answer_offer(body.offer_id, body.action, user.id, publisher=publisher)


@app.post("/dispatch/offers/expire", response_model=ExpireOut)
def dispatch_expire(user: CurrentUser = Depends(get_current_user)):
    require_role(user)
    return ExpireOut(expired=expire_stale_offers())


@app.post("/dispatch/stacking/suggest", response_model=StackingOut)
def dispatch_stacking(body: StackingIn, user: CurrentUser = Depends(get_current_user)):
    if body.courier_id != user.id:
        require_role(user)
    with db_session() as db:
        return suggest_stacking(
            db,
            body.courier_id,
            utcnow(),
            max_orders=body.max_orders,
            max_distance_km=body.max_distance_km,
        )


# ----------------------
# Couriers
# ----------------------


@app.post("/couriers/location", response_model=LocationPingOut)
def courier_location(body: LocationPingIn, user: CurrentUser = Depends(get_current_user)):
    require_role(user, "courier")
    now = utcnow()
    with db_session() as db:
        hit(db, f"location:{user.id}", 1, settings.LOCATION_PING_INTERVAL_SECONDS, now)

        presence = db.get(CourierPresence, user.id)
        if presence is None:
            presence = CourierPresence(courier_id=user.id)
            db.add(presence)
        presence.is_online = True
        presence.lat = body.lat
        presence.lng = body.lng
        if body.battery_pct is not None:
            presence.battery_pct = body.battery_pct
        presence.last_seen = now

    return LocationPingOut(success=True, courier_id=user.id, last_seen=now)


# ----------------------
# Routing API (OSRM)
# ----------------------


@app.get("/routing/estimate", response_model=RoutingEstimateResponse)
async def routing_estimate(
    fromLat: float = Query(...),
    fromLng: float = Query(...),
    toLat: float = Query(...),
    toLng: float = Query(...),
    mode: str = Query("driving", pattern="^(driving|cycling|walking)$"),
):
    """
    OSRM travel distance and duration, haversine estimate when OSRM fails.
    """
    route = await estimate_route(fromLat, fromLng, toLat, toLng, mode)
    return RoutingEstimateResponse(
        fromLat=fromLat,
        fromLng=fromLng,
        toLat=toLat,
        toLng=toLng,
        distanceKm=route["distance_km"],
        durationMin=route["duration_min"],
        polyline=route["polyline"],
        provider=route["provider"],
    )
