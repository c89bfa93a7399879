from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/shipping"
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_consumer_group: str = "shipping-service"
    kafka_publish_timeout: float = 5.0
    consumer_enabled: bool = True

    # Redelivery: attempts include the first delivery
    max_delivery_attempts: int = 5
    retry_backoff: float = 1.0

    # Carriers: name -> (min, max) lead time in days
    default_carrier: str = "Standard Shipping"
    carrier_lead_times: dict[str, tuple[int, int]] = {
        "Standard Shipping": (5, 7),
        "Express Shipping": (1, 3),
    }

    # Automatic progression: target status -> seconds after entering the previous one.
    # A status missing here is only reached by a manual update.
    auto_progression_delays: dict[str, float] = {
        "shipped": 60.0,
        "in-transit": 3600.0,
    }

    # Durable scheduler
    scheduler_enabled: bool = True
    scheduler_interval: float = 5.0
    scheduler_batch_size: int = 100

    # Observability
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"

    model_config = {"env_file": ".env", "env_prefix": "SHIPPING_"}


settings = Settings()
