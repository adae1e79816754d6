from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # Tokens are issued by the identity service; this service only verifies them
    SECRET_KEY: str
    ALGORITHM: str

    # Collaborating services
    CATALOG_SERVICE_URL: str = "http://catalog:8000"
    IDENTITY_SERVICE_URL: str = "http://identity:8000"
    HTTP_TIMEOUT_SECONDS: float = 5.0

    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_BOOKING_TOPIC: str = "booking_events"

    REDIS_URL: str
    PROFILE_CACHE_TTL_SECONDS: int = 300

    SCHEDULER_POLL_INTERVAL_SECONDS: int = 3600
    OUTBOX_POLL_INTERVAL_SECONDS: int = 5

    # Attempts at a reservation that keeps losing the race for a listing
    BOOKING_MAX_RETRIES: int = 3

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
