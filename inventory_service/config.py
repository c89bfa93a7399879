from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/inventory"
    log_level: str = "INFO"

    # Populate a demo catalog when the stock table is empty
    seed_catalog: bool = True

    # Observability
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"

    model_config = {"env_file": ".env", "env_prefix": "INVENTORY_"}


settings = Settings()
