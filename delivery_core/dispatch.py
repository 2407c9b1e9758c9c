"""
Courier dispatch: time-boxed offers for ready orders and the courier's answer.

Safety rule: an order gets at most one courier. The order row's
``courier_id`` is claimed with a single conditional UPDATE
(``... WHERE courier_id IS NULL``), so the database decides which of two
concurrent accepts wins; the loser's offer is marked CANCELLED.

Every multi-step write runs inside one ``db_session()`` so a failure at any
step leaves nothing behind. Broadcasts and notifications go out after the
commit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .db import db_session
from .errors import (
    AccessDenied,
    CapacityExceeded,
    DispatchFailed,
    InvalidRequest,
    NotFound,
    OfferExpired,
    OfferUnavailable,
    OrderAlreadyAssigned,
    OrderNotReady,
)
from .events import Publisher
from .geo import estimate_travel, haversine_km
from .models import (
    COURIER_ASSIGNED,
    OFFER_ACCEPTED,
    OFFER_CANCELLED,
    OFFER_DECLINED,
    OFFER_EXPIRED,
    OFFER_PENDING,
    READY,
    CourierActiveOrder,
    CourierEarning,
    CourierPresence,
    DispatchOffer,
    Order,
    OrderEvent,
    Restaurant,
)
from .ratelimit import purge_before
from .schemas import AnswerOut, CreateOffersOut, OfferOut, RestaurantInfo
from .util import utcnow

logger = logging.getLogger(__name__)


def active_order_count(db, courier_id: str) -> int:
    return db.execute(
        select(func.count(CourierActiveOrder.id)).where(CourierActiveOrder.courier_id == courier_id)
    ).scalar_one()


def estimated_earnings_cents(order_total_cents: int) -> int:
    return int(round(order_total_cents * settings.COURIER_COMMISSION))


@dataclass
class _Candidate:
    courier_id: str
    distance_km: float


def _nearby_couriers(db, order: Order, restaurant: Restaurant, now: datetime) -> list[_Candidate]:
    """Online couriers near the restaurant, nearest first, who can take one more order."""
    fresh_after = now - timedelta(seconds=settings.PRESENCE_STALE_SECONDS)
    presences = db.execute(
        select(CourierPresence).where(
            CourierPresence.is_online.is_(True),
            CourierPresence.lat.is_not(None),
            CourierPresence.lng.is_not(None),
            CourierPresence.last_seen >= fresh_after,
        )
    ).scalars()

    already_offered = set(
        db.execute(select(DispatchOffer.courier_id).where(DispatchOffer.order_id == order.id)).scalars()
    )

    candidates = []
    for p in presences:
        if p.courier_id in already_offered:
            continue
        d = haversine_km(p.lat, p.lng, restaurant.lat, restaurant.lng)
        if d <= settings.OFFER_RADIUS_KM:
            candidates.append(_Candidate(p.courier_id, d))
    candidates.sort(key=lambda c: c.distance_km)

    out = []
    for c in candidates:
        if len(out) >= settings.OFFER_FANOUT:
            break
        if active_order_count(db, c.courier_id) >= settings.MAX_ACTIVE_ORDERS:
            continue
        out.append(c)
    return out


def create_offers(order_id: str, now: datetime | None = None, publisher: Publisher | None = None) -> CreateOffersOut:
    """
    Offer a ready, unassigned order to the nearest available couriers.
    Couriers that were already offered this order are skipped, so calling
    this again after declines/expiry widens the search.
    """
    now = now or utcnow()
    with db_session() as db:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.status != READY or order.courier_id is not None:
            raise OrderNotReady(f"Order is not ready for dispatch (status: {order.status})")
        restaurant = db.get(Restaurant, order.restaurant_id)
        if restaurant is None or restaurant.lat is None or restaurant.lng is None:
            raise InvalidRequest("Restaurant location not available")

        candidates = _nearby_couriers(db, order, restaurant, now)
        if not candidates:
            logger.info("No couriers available for order %s", order_id)
            return CreateOffersOut(
                success=False,
                order_id=order_id,
                couriers_found=0,
                offers=[],
                message="No couriers available in the area",
            )

        earnings = estimated_earnings_cents(order.total_cents)
        expires_at = now + timedelta(seconds=settings.OFFER_TTL_SECONDS)
        offers = []
        for c in candidates:
            _, eta = estimate_travel(c.distance_km)
            offers.append(
                DispatchOffer(
                    order_id=order_id,
                    courier_id=c.courier_id,
                    status=OFFER_PENDING,
                    expires_at=expires_at,
                    estimated_earnings_cents=earnings,
                    distance_km=round(c.distance_km, 2),
                    eta_minutes=eta,
                    created_at=now,
                )
            )
        db.add_all(offers)
        db.add(
            OrderEvent(
                order_id=order_id,
                status=order.status,
                actor_role="system",
                notes=f"Dispatch offered to {len(offers)} couriers",
                details={"couriers": [c.courier_id for c in candidates]},
                created_at=now,
            )
        )
        db.flush()
        restaurant_name = restaurant.name

    logger.info("Order %s offered to %d couriers", order_id, len(offers))
    if publisher is not None:
        for offer in offers:
            publisher.notify(
                offer.courier_id,
                "New delivery available!",
                f"Order from {restaurant_name} - {offer.distance_km:.1f}km",
                "ORDER_OFFER",
                {
                    "offer_id": offer.id,
                    "order_id": order_id,
                    "restaurant_name": restaurant_name,
                    "distance_km": offer.distance_km,
                    "estimated_earnings_cents": offer.estimated_earnings_cents,
                    "expires_at": offer.expires_at.isoformat(),
                },
            )

    return CreateOffersOut(
        success=True,
        order_id=order_id,
        couriers_found=len(offers),
        offers=[
            OfferOut(
                offer_id=o.id,
                courier_id=o.courier_id,
                distance_km=o.distance_km,
                eta_minutes=o.eta_minutes,
                estimated_earnings_cents=o.estimated_earnings_cents,
                expires_at=o.expires_at,
            )
            for o in offers
        ],
    )


def _decline(db, offer: DispatchOffer, now: datetime) -> None:
    declined = db.execute(
        update(DispatchOffer)
        .where(DispatchOffer.id == offer.id, DispatchOffer.status == OFFER_PENDING)
        .values(status=OFFER_DECLINED, responded_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not declined:
        raise OfferUnavailable("Offer is no longer available")


def _claim_order(db, order_id: str, courier_id: str, now: datetime) -> bool:
    """Set the order's courier only if nobody holds it yet."""
    return bool(
        db.execute(
            update(Order)
            .where(Order.id == order_id, Order.courier_id.is_(None), Order.status == READY)
            .values(courier_id=courier_id, status=COURIER_ASSIGNED, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
    )


def _commit_acceptance(db, offer: DispatchOffer, courier_id: str, active_count: int, now: datetime) -> int:
    accepted = db.execute(
        update(DispatchOffer)
        .where(DispatchOffer.id == offer.id, DispatchOffer.status == OFFER_PENDING)
        .values(status=OFFER_ACCEPTED, responded_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not accepted:
        raise OfferUnavailable("Offer is no longer available")

    db.execute(
        update(DispatchOffer)
        .where(
            DispatchOffer.order_id == offer.order_id,
            DispatchOffer.status == OFFER_PENDING,
            DispatchOffer.id != offer.id,
        )
        .values(status=OFFER_CANCELLED, responded_at=now)
        .execution_options(synchronize_session=False)
    )

    sequence = active_count + 1
    db.add(
        CourierActiveOrder(
            courier_id=courier_id,
            order_id=offer.order_id,
            sequence_order=sequence,
            distance_km=offer.distance_km,
            pickup_eta=now + timedelta(minutes=offer.eta_minutes),
            created_at=now,
        )
    )
    db.add(
        CourierEarning(
            courier_id=courier_id,
            order_id=offer.order_id,
            amount_cents=offer.estimated_earnings_cents,
            type="BASE",
            description=f"Delivery #{offer.order_id[:8]}",
            reference_date=now.date().isoformat(),
        )
    )
    db.add(
        OrderEvent(
            order_id=offer.order_id,
            status=COURIER_ASSIGNED,
            actor_id=courier_id,
            actor_role="courier",
            notes="Courier accepted delivery offer",
            details={
                "offer_id": offer.id,
                "distance_km": offer.distance_km,
                "eta_minutes": offer.eta_minutes,
                "earnings_cents": offer.estimated_earnings_cents,
            },
            created_at=now,
        )
    )
    db.flush()
    return sequence


def answer_offer(
    offer_id: str,
    action: str,
    courier_id: str,
    now: datetime | None = None,
    publisher: Publisher | None = None,
) -> AnswerOut:
    """
    Apply a courier's ACCEPT/DECLINE to a pending offer.

    Expiry and lost races are recorded on the offer (EXPIRED / CANCELLED)
    and committed before the error is raised.
    """
    if action not in ("ACCEPT", "DECLINE"):
        raise InvalidRequest("action must be ACCEPT or DECLINE")
    now = now or utcnow()
    failure = None
    result = None

    with db_session() as db:
        offer = db.get(DispatchOffer, offer_id)
        if offer is None:
            raise NotFound("Offer not found")
        if offer.courier_id != courier_id:
            raise AccessDenied("Access denied")
        if offer.status != OFFER_PENDING:
            raise OfferUnavailable(
                f"Offer is no longer available (status: {offer.status})", status=offer.status
            )

        if now >= offer.expires_at:
            offer.status = OFFER_EXPIRED
            offer.responded_at = now
            failure = OfferExpired("Offer has expired")

        elif action == "DECLINE":
            _decline(db, offer, now)
            result = AnswerOut(success=True, action="DECLINED", offer_id=offer_id)

        else:
            active = active_order_count(db, courier_id)
            if active >= settings.MAX_ACTIVE_ORDERS:
                raise CapacityExceeded(
                    f"Cannot accept more than {settings.MAX_ACTIVE_ORDERS} orders simultaneously",
                    max_active_orders=settings.MAX_ACTIVE_ORDERS,
                )

            try:
                if not _claim_order(db, offer.order_id, courier_id, now):
                    current = db.execute(
                        select(Order.courier_id, Order.status).where(Order.id == offer.order_id)
                    ).one()
                    offer.status = OFFER_CANCELLED
                    offer.responded_at = now
                    if current.courier_id and current.courier_id != courier_id:
                        failure = OrderAlreadyAssigned("Order was already accepted by another courier")
                    else:
                        failure = OfferUnavailable(
                            f"Order is no longer available (status: {current.status})", status=current.status
                        )
                else:
                    sequence = _commit_acceptance(db, offer, courier_id, active, now)
                    order = db.get(Order, offer.order_id)
                    restaurant = db.get(Restaurant, order.restaurant_id)
                    result = AnswerOut(
                        success=True,
                        action="ACCEPTED",
                        offer_id=offer_id,
                        order_id=offer.order_id,
                        earnings_cents=offer.estimated_earnings_cents,
                        pickup_eta_minutes=offer.eta_minutes,
                        restaurant=RestaurantInfo(name=restaurant.name, lat=restaurant.lat, lng=restaurant.lng)
                        if restaurant
                        else None,
                        delivery_address=order.delivery_address,
                        sequence_order=sequence,
                    )
                    notify_user = order.user_id
                    restaurant_id = order.restaurant_id
            except SQLAlchemyError as exc:
                logger.exception("Accept transaction failed for offer %s", offer_id)
                raise DispatchFailed("Failed to accept offer") from exc

    if failure is not None:
        logger.info("Offer %s answer by %s rejected: %s", offer_id, courier_id, failure.code)
        raise failure

    logger.info("Offer %s %s by courier %s", offer_id, result.action, courier_id)
    if result.action == "ACCEPTED" and publisher is not None:
        publisher.broadcast(
            f"restaurant:{restaurant_id}",
            "courier_assigned",
            {
                "order_id": result.order_id,
                "courier_id": courier_id,
                "eta_minutes": result.pickup_eta_minutes,
                "status": COURIER_ASSIGNED,
            },
        )
        publisher.notify(
            notify_user,
            "Courier on the way!",
            "Your order was accepted and the courier is heading to the restaurant",
            "ORDER_ACCEPTED",
            {"order_id": result.order_id, "status": COURIER_ASSIGNED},
        )
    return result


def expire_stale_offers(now: datetime | None = None) -> int:
    """Mark every PENDING offer at or past its deadline as EXPIRED."""
    now = now or utcnow()
    with db_session() as db:
        expired = db.execute(
            update(DispatchOffer)
            .where(DispatchOffer.status == OFFER_PENDING, DispatchOffer.expires_at <= now)
            .values(status=OFFER_EXPIRED, responded_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        purge_before(db, now - timedelta(hours=1))
    if expired:
        logger.info("Expired %d stale dispatch offers", expired)
    return expired


async def sweep_forever(interval_seconds: float) -> None:
    while True:
        try:
            await asyncio.to_thread(expire_stale_offers)
        except SQLAlchemyError:
            logger.exception("Offer sweep failed")
        await asyncio.sleep(interval_seconds)
