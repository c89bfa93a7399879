from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/orders"
    log_level: str = "INFO"

    # Inventory service (stock ledger)
    inventory_service_url: str = "http://inventory-service:8000"
    inventory_timeout: float = 3.0
    inventory_max_retries: int = 3
    inventory_retry_backoff: float = 0.2

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_publish_timeout: float = 5.0

    # Outbox relay / reconciliation sweep
    outbox_relay_interval: float = 10.0
    outbox_grace_period: float = 30.0
    outbox_batch_size: int = 50

    # Invoicing
    invoice_tax_rate: Decimal = Decimal("0.10")
    invoice_due_days: int = 30

    # Observability
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"

    model_config = {"env_file": ".env", "env_prefix": "ORDER_"}


settings = Settings()
