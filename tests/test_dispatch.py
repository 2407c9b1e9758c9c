import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select

from delivery_core.db import db_session
from delivery_core.dispatch import answer_offer, create_offers, expire_stale_offers
from delivery_core.errors import (
    AccessDenied,
    CapacityExceeded,
    DeliveryError,
    DispatchFailed,
    InvalidRequest,
    NotFound,
    OfferExpired,
    OfferUnavailable,
    OrderAlreadyAssigned,
    OrderNotReady,
)
from delivery_core.models import (
    CourierActiveOrder,
    CourierEarning,
    DispatchOffer,
    Order,
    OrderEvent,
)

import factories as f
from factories import NOW, RESTAURANT_LAT, RESTAURANT_LNG


def offer_status(offer_id):
    with db_session() as db:
        return db.get(DispatchOffer, offer_id).status


def load_order(order_id="or_1"):
    with db_session() as db:
        return db.get(Order, order_id)


def count(model, **filters):
    with db_session() as db:
        stmt = select(model)
        for k, v in filters.items():
            stmt = stmt.where(getattr(model, k) == v)
        return len(db.execute(stmt).scalars().all())


@pytest.fixture
def ready_order():
    f.restaurant()
    f.order()


# ----------------------
# Offer creation
# ----------------------


def test_create_offers_targets_nearest_available_couriers(ready_order, publisher):
    f.presence("c_near", RESTAURANT_LAT + 0.005, RESTAURANT_LNG)  # ~0.5 km
    f.presence("c_mid", RESTAURANT_LAT + 0.02, RESTAURANT_LNG)  # ~2.2 km
    f.presence("c_far", RESTAURANT_LAT + 0.2, RESTAURANT_LNG)  # ~22 km
    f.presence("c_offline", RESTAURANT_LAT, RESTAURANT_LNG, online=False)
    f.presence("c_stale", RESTAURANT_LAT, RESTAURANT_LNG, last_seen=NOW - timedelta(hours=1))
    f.presence("c_busy", RESTAURANT_LAT + 0.001, RESTAURANT_LNG)
    f.busy("c_busy", 3)

    out = create_offers("or_1", now=NOW, publisher=publisher)

    assert out.success
    assert [o.courier_id for o in out.offers] == ["c_near", "c_mid"]
    first = out.offers[0]
    assert first.estimated_earnings_cents == 500
    assert first.expires_at == NOW + timedelta(seconds=45)
    assert first.eta_minutes >= 1
    assert [n[0] for n in publisher.notifications] == ["c_near", "c_mid"]
    assert publisher.notifications[0][1] == "ORDER_OFFER"
    assert count(OrderEvent, order_id="or_1") == 1


def test_create_offers_caps_fanout_and_skips_previous_recipients(ready_order):
    for i in range(5):
        f.presence(f"c_{i}", RESTAURANT_LAT + 0.001 * (i + 1), RESTAURANT_LNG)

    first = create_offers("or_1", now=NOW)
    assert [o.courier_id for o in first.offers] == ["c_0", "c_1", "c_2"]

    second = create_offers("or_1", now=NOW)
    assert [o.courier_id for o in second.offers] == ["c_3", "c_4"]


def test_create_offers_without_couriers(ready_order):
    out = create_offers("or_1", now=NOW)
    assert not out.success
    assert out.couriers_found == 0
    assert count(DispatchOffer) == 0


def test_create_offers_requires_ready_unassigned_order():
    f.restaurant()
    f.order("or_prep", status="preparing")
    f.order("or_taken", courier_id="c_9", status="courier_assigned")
    with pytest.raises(OrderNotReady):
        create_offers("or_prep", now=NOW)
    with pytest.raises(OrderNotReady):
        create_offers("or_taken", now=NOW)
    with pytest.raises(NotFound):
        create_offers("missing", now=NOW)


def test_create_offers_requires_restaurant_location():
    f.restaurant(lat=None, lng=None)
    f.order()
    with pytest.raises(InvalidRequest):
        create_offers("or_1", now=NOW)


# ----------------------
# Answering
# ----------------------


def test_accept_assigns_order_and_records_everything(ready_order, publisher):
    f.offer("of_a", "c_a")
    f.offer("of_b", "c_b")

    out = answer_offer("of_a", "ACCEPT", "c_a", now=NOW, publisher=publisher)

    assert out.action == "ACCEPTED"
    assert out.order_id == "or_1"
    assert out.earnings_cents == 500
    assert out.pickup_eta_minutes == 6
    assert out.sequence_order == 1
    assert out.restaurant.name == "Pizza Place"
    assert out.delivery_address["street"] == "Rua Augusta 100"

    assert offer_status("of_a") == "ACCEPTED"
    assert offer_status("of_b") == "CANCELLED"
    order = load_order()
    assert order.courier_id == "c_a"
    assert order.status == "courier_assigned"

    with db_session() as db:
        active = db.execute(select(CourierActiveOrder)).scalars().one()
        assert (active.courier_id, active.order_id, active.sequence_order) == ("c_a", "or_1", 1)
        assert active.pickup_eta == NOW + timedelta(minutes=6)
        earning = db.execute(select(CourierEarning)).scalars().one()
        assert (earning.amount_cents, earning.type, earning.reference_date) == (500, "BASE", "2026-03-10")
        event = db.execute(select(OrderEvent)).scalars().one()
        assert event.status == "courier_assigned"
        assert event.details["offer_id"] == "of_a"

    assert publisher.broadcasts == [
        ("restaurant:r_1", "courier_assigned",
         {"order_id": "or_1", "courier_id": "c_a", "eta_minutes": 6, "status": "courier_assigned"}),
    ]
    assert publisher.notifications[0][:2] == ("customer_1", "ORDER_ACCEPTED")


def test_sequence_follows_existing_active_orders(ready_order):
    f.busy("c_a", 2)
    f.offer("of_a", "c_a")
    out = answer_offer("of_a", "ACCEPT", "c_a", now=NOW)
    assert out.sequence_order == 3


def test_sibling_offer_cannot_be_accepted_after_winner(ready_order):
    f.offer("of_a", "c_a")
    f.offer("of_b", "c_b")
    answer_offer("of_a", "ACCEPT", "c_a", now=NOW)

    with pytest.raises(OfferUnavailable):
        answer_offer("of_b", "ACCEPT", "c_b", now=NOW)
    assert offer_status("of_b") == "CANCELLED"
    assert load_order().courier_id == "c_a"


def test_lost_race_cancels_offer(ready_order):
    f.offer("of_b", "c_b")
    # another courier claimed the order between the offer being sent and answered
    with db_session() as db:
        order = db.get(Order, "or_1")
        order.courier_id = "c_a"
        order.status = "courier_assigned"

    with pytest.raises(OrderAlreadyAssigned) as err:
        answer_offer("of_b", "ACCEPT", "c_b", now=NOW)

    assert err.value.code == "already_accepted"
    assert offer_status("of_b") == "CANCELLED"
    assert load_order().courier_id == "c_a"
    assert count(CourierActiveOrder, courier_id="c_b") == 0
    assert count(CourierEarning) == 0


def test_concurrent_accepts_assign_exactly_one_courier(ready_order):
    f.offer("of_a", "c_a")
    f.offer("of_b", "c_b")
    barrier = threading.Barrier(2)

    def accept(offer_id, courier_id):
        barrier.wait()
        try:
            return answer_offer(offer_id, "ACCEPT", courier_id, now=NOW).action
        except DeliveryError as exc:
            return exc.code

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = dict(zip(["c_a", "c_b"], pool.map(accept, ["of_a", "of_b"], ["c_a", "c_b"])))

    winners = [c for c, r in results.items() if r == "ACCEPTED"]
    assert len(winners) == 1
    loser = "c_b" if winners[0] == "c_a" else "c_a"
    assert results[loser] in ("already_accepted", "offer_unavailable")

    statuses = sorted([offer_status("of_a"), offer_status("of_b")])
    assert statuses == ["ACCEPTED", "CANCELLED"]
    assert load_order().courier_id == winners[0]
    assert count(CourierActiveOrder) == 1
    assert count(CourierEarning) == 1


def test_failed_accept_rolls_everything_back(ready_order, publisher):
    # the order already has an active-order row, so the insert hits the unique key
    f.add(CourierActiveOrder(courier_id="c_x", order_id="or_1", sequence_order=1))
    f.offer("of_a", "c_a")
    f.offer("of_b", "c_b")

    with pytest.raises(DispatchFailed) as err:
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW, publisher=publisher)

    assert err.value.status_code == 500
    assert offer_status("of_a") == "PENDING"
    assert offer_status("of_b") == "PENDING"
    order = load_order()
    assert (order.courier_id, order.status) == (None, "ready")
    assert count(CourierEarning) == 0
    assert count(OrderEvent) == 0
    assert count(CourierActiveOrder, courier_id="c_a") == 0
    assert publisher.broadcasts == []
    assert publisher.notifications == []


def test_accept_on_cancelled_order_is_unavailable():
    f.restaurant()
    f.order(status="cancelled")
    f.offer("of_a", "c_a")
    with pytest.raises(OfferUnavailable):
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW)
    assert offer_status("of_a") == "CANCELLED"
    assert load_order().courier_id is None


def test_capacity_exceeded_has_no_side_effects(ready_order, publisher):
    f.busy("c_a", 3)
    f.offer("of_a", "c_a")

    with pytest.raises(CapacityExceeded):
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW, publisher=publisher)

    assert offer_status("of_a") == "PENDING"
    assert load_order().courier_id is None
    assert count(CourierActiveOrder, courier_id="c_a") == 3
    assert count(CourierEarning) == 0
    assert publisher.broadcasts == []


def test_decline_leaves_order_untouched(ready_order):
    f.offer("of_a", "c_a")
    before = load_order()

    out = answer_offer("of_a", "DECLINE", "c_a", now=NOW)

    assert out.action == "DECLINED"
    assert out.order_id is None
    assert offer_status("of_a") == "DECLINED"
    after = load_order()
    assert (after.status, after.courier_id, after.updated_at) == (before.status, before.courier_id, before.updated_at)


def test_expired_offer_flips_to_expired(ready_order):
    f.offer("of_a", "c_a", expires_at=NOW - timedelta(seconds=1))

    with pytest.raises(OfferExpired):
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW)

    assert offer_status("of_a") == "EXPIRED"
    assert load_order().courier_id is None

    with pytest.raises(OfferUnavailable) as err:
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW)
    assert err.value.extra["status"] == "EXPIRED"


def test_offer_is_expired_at_its_deadline(ready_order):
    f.offer("of_a", "c_a", expires_at=NOW)

    with pytest.raises(OfferExpired):
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW)

    assert offer_status("of_a") == "EXPIRED"
    assert load_order().courier_id is None


def test_only_the_offered_courier_may_answer(ready_order):
    f.offer("of_a", "c_a")
    with pytest.raises(AccessDenied):
        answer_offer("of_a", "ACCEPT", "c_intruder", now=NOW)
    assert offer_status("of_a") == "PENDING"


def test_unknown_offer_and_bad_action(ready_order):
    with pytest.raises(NotFound):
        answer_offer("nope", "ACCEPT", "c_a", now=NOW)
    f.offer("of_a", "c_a")
    with pytest.raises(InvalidRequest):
        answer_offer("of_a", "MAYBE", "c_a", now=NOW)


def test_terminal_offers_stay_terminal(ready_order):
    f.offer("of_a", "c_a", status="DECLINED")
    with pytest.raises(OfferUnavailable):
        answer_offer("of_a", "ACCEPT", "c_a", now=NOW)
    assert offer_status("of_a") == "DECLINED"


# ----------------------
# Expiry sweep
# ----------------------


def test_expire_stale_offers_only_touches_overdue_pending(ready_order):
    f.offer("of_old", "c_a", expires_at=NOW - timedelta(minutes=1))
    f.offer("of_new", "c_b", expires_at=NOW + timedelta(minutes=1))
    f.offer("of_due", "c_d", expires_at=NOW)
    f.offer("of_done", "c_c", status="DECLINED", expires_at=NOW - timedelta(minutes=1))

    assert expire_stale_offers(now=NOW) == 2

    assert offer_status("of_old") == "EXPIRED"
    assert offer_status("of_due") == "EXPIRED"
    assert offer_status("of_new") == "PENDING"
    assert offer_status("of_done") == "DECLINED"
