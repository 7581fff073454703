"""
Checkout Inventory Core
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="checkout_core", description="Database name")
    user: str = Field(default="checkout", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port, e.g. sqlite+aiosqlite)")
    pool_size: int = Field(default=20, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    create_tables: bool = Field(default=False, description="Create missing tables on startup")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka configuration for outbound order/inventory events"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    enabled: bool = Field(default=False, description="Publish outbound events to Kafka")
    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    client_id: str = Field(default="checkout-core", description="Producer client id")
    topic_order_events: str = Field(default="order-events", description="Order lifecycle topic")
    topic_inventory_events: str = Field(default="inventory-events", description="Inventory alerts topic")
    queue_size: int = Field(default=10000, description="Max buffered events before dropping")


class ReservationSettings(BaseSettings):
    """Inventory reservation and expiry configuration"""

    model_config = SettingsConfigDict(env_prefix="RESERVATION_")

    cart_ttl_minutes: int = Field(default=30, ge=1, description="Cart hold lifetime without activity")
    order_ttl_minutes: int = Field(default=20, ge=1, description="Unpaid online order lifetime")
    max_attempts: int = Field(default=5, ge=1, le=10, description="Attempts for conflicting/transient writes")
    backoff_min_ms: int = Field(default=5, ge=0, description="First retry delay")
    backoff_max_ms: int = Field(default=200, ge=0, description="Retry delay ceiling")
    sweep_interval_seconds: int = Field(default=60, ge=1, description="Expiry sweep period")
    sweep_batch_size: int = Field(default=200, ge=1, description="Rows released per sweep pass")
    sweep_enabled: bool = Field(default=True, description="Run the in-process sweeper")
    low_stock_threshold: int = Field(default=5, ge=0, description="Publish low-stock alert at or below")


class CheckoutSettings(BaseSettings):
    """Order placement configuration"""

    model_config = SettingsConfigDict(env_prefix="CHECKOUT_")

    order_number_prefix: str = Field(default="ORD-", description="Human-readable order number prefix")
    order_number_digits: int = Field(default=6, ge=1, description="Zero padding width")
    order_number_start: int = Field(default=1, ge=1, description="First sequence value")
    max_number_attempts: int = Field(default=5, ge=1, description="Order number collision retries")
    payment_methods: List[str] = Field(
        default=["stripe", "razorpay", "cod"],
        description="Enabled payment methods",
    )
    deferred_payment_methods: List[str] = Field(
        default=["cod"],
        description="Methods exempt from unpaid-order expiry",
    )
    currency: str = Field(default="INR", description="Order currency")


class WebhookSettings(BaseSettings):
    """Payment provider webhook configuration"""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_")

    stripe_secret: SecretStr = Field(default="whsec_change_me", description="Stripe endpoint signing secret")
    razorpay_secret: SecretStr = Field(default="razorpay_change_me", description="Razorpay webhook secret")
    signature_tolerance_seconds: int = Field(default=300, ge=0, description="Max signed timestamp age")
    dedup_ttl_hours: int = Field(default=24, ge=1, description="Dedup record retention")
    dedup_backend: str = Field(default="database", description="database or redis")

    @field_validator("dedup_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = ["database", "redis"]
        if v.lower() not in allowed:
            raise ValueError(f"Dedup backend must be one of: {allowed}")
        return v.lower()


class SecuritySettings(BaseSettings):
    """Security Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Rate limiting
    rate_limit_requests: int = Field(default=600, description="Rate limit requests")
    rate_limit_window_seconds: int = Field(default=60, description="Rate limit window")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")

    # Metrics
    metrics_enabled: bool = Field(default=True, description="Expose /metrics")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="checkout-core", description="Application name")
    app_env: str = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Debug mode")
    storage_backend: str = Field(default="sql", description="sql or memory")

    # API Server
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="API workers")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    reservation: ReservationSettings = Field(default_factory=ReservationSettings)
    checkout: CheckoutSettings = Field(default_factory=CheckoutSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage(cls, v: str) -> str:
        allowed = ["sql", "memory"]
        if v.lower() not in allowed:
            raise ValueError(f"Storage backend must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience function for accessing settings
settings = get_settings()
