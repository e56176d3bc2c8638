from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Redis holds presence, offers, driver locks and dispatch queues
    REDIS_URL: str = "redis://localhost:6379/0"

    # Presence: a driver is alive while its heartbeat key exists (seconds)
    HEARTBEAT_TTL_SECONDS: int = 30

    # Offers: pending offer per ride, lock per driver (slightly longer than the offer)
    OFFER_TTL_SECONDS: int = 20
    DRIVER_LOCK_TTL_SECONDS: int = 25

    # Candidate queue lifetime; not refreshed by pops, so it bounds total dispatch time
    DISPATCH_QUEUE_TTL_SECONDS: int = 60
    # How long a finished dispatch record stays readable for status queries
    DISPATCH_RECORD_TTL_SECONDS: int = 3600

    # Nearby search
    NEARBY_RADIUS_KM: float = 10.0
    NEARBY_LIMIT: int = 10
    NEARBY_OVERFETCH_FACTOR: int = 3

    # Background sweep over active dispatches (timed-out offers, stalled steps)
    SWEEP_INTERVAL_SECONDS: float = 5.0
    ENABLE_OFFER_SWEEPER: bool = True

    # Bind address for `python -m ridedispatch`
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
