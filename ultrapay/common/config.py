"""Central environment-driven settings for the payment gateway service.

Loaded once per process at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "click-gateway"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # Click merchant integration; the service refuses to start without these.
    click_merchant_id: str
    click_service_id: str
    click_secret_key: str
    click_user_id: str
    click_endpoint: str = "https://my.click.uz"

    prepare_ttl_seconds: int = 3600
    store_retry_attempts: int = Field(3, ge=1)
    store_retry_backoff_seconds: float = 0.05
    order_verifier: Literal["sql", "http"] = "sql"
    order_service_url: str = "http://order-service:3002"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
