from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core DB
    DATABASE_URL: str = "postgresql://delivery:delivery@db:5432/delivery"

    LOG_LEVEL: str = "INFO"

    # Quoting
    MARKET_TIMEZONE: str = "UTC"  # hour-of-day fee rules
    DEFAULT_WEATHER: str | None = None  # e.g. "rain"
    DEFAULT_HIGH_DEMAND: bool = False

    # Dispatch
    MAX_ACTIVE_ORDERS: int = 3
    OFFER_TTL_SECONDS: int = 45
    OFFER_RADIUS_KM: float = 5.0
    OFFER_FANOUT: int = 3
    COURIER_COMMISSION: float = 0.10  # share of order total offered as earnings
    PRESENCE_STALE_SECONDS: int = 120
    OFFER_SWEEP_INTERVAL_SECONDS: int = 15

    # Stacking
    STACKING_MAX_ORDERS: int = 3
    STACKING_MAX_DISTANCE_KM: float = 2.0
    STACKING_CANDIDATE_LIMIT: int = 20
    PICKUP_SPEED_KMH: float = 25.0
    SERVICE_MINUTES_PER_STOP: int = 5

    # Location pings
    LOCATION_PING_INTERVAL_SECONDS: int = 2

    # Routing
    ROUTING_BASE_URL: str = "https://router.project-osrm.org"

    # Platform collaborators
    AUTH_URL: str | None = None  # identity service, GET {AUTH_URL}/user
    AUTH_API_KEY: str | None = None
    REALTIME_URL: str | None = None  # broadcast endpoint
    NOTIFY_URL: str | None = None  # notification dispatcher
    HTTP_TIMEOUT_SECONDS: float = 5.0

    SEED_REFERENCE_DATA: bool = True

    # Optional: used for CORS / frontend
    APP_DOMAIN: str | None = None

    class Config:
        env_file = ".env"


settings = Settings()
