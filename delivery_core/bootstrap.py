from .db import engine, db_session
from .models import Base, DeliveryZone, DynamicFee, Setting
from .config import settings as cfg


def create_schema():
    Base.metadata.create_all(bind=engine)


def seed_zones():
    with db_session() as db:
        count = db.query(DeliveryZone).count()
        if count > 0:
            return

        zones = [
            DeliveryZone(id="z_1_center", name="Center", polygon=None, max_distance_km=5.0,
                         base_fee=5.99, per_km_rate=1.20, min_time_minutes=25),
            DeliveryZone(id="z_2_metro", name="Metro", polygon=None, max_distance_km=12.0,
                         base_fee=8.99, per_km_rate=1.50, min_time_minutes=35),
        ]
        db.add_all(zones)


def seed_dynamic_fees():
    with db_session() as db:
        count = db.query(DynamicFee).count()
        if count > 0:
            return

        fees = [
            DynamicFee(name="Dinner peak", type="time", conditions={"hours": [19, 20, 21]},
                       fee_type="fixed", fee_value=2.00, priority=10),
            DynamicFee(name="Rain", type="weather", conditions={"weather": "rain"},
                       fee_type="fixed", fee_value=3.00, priority=20),
            DynamicFee(name="Long distance", type="distance", conditions={"min_km": 8},
                       fee_type="per_km", fee_value=0.50, priority=5),
        ]
        db.add_all(fees)


def seed_signals():
    with db_session() as db:
        existing = db.get(Setting, "signals")
        if existing:
            return

        default = {
            "weather": cfg.DEFAULT_WEATHER,
            "high_demand": cfg.DEFAULT_HIGH_DEMAND,
        }
        db.add(Setting(key="signals", value=default))


def bootstrap():
    create_schema()
    if not cfg.SEED_REFERENCE_DATA:
        return
    seed_zones()
    seed_dynamic_fees()
    seed_signals()
