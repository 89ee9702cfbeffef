"""Application settings using Pydantic for environment-based configuration."""
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storefront_payments.exceptions import ConfigurationError


class GatewayEnvironment(str, Enum):
    """Payment provider environment."""

    TEST = "test"
    PRODUCTION = "production"


class GatewayConfig(BaseModel):
    """
    Gateway configuration for one environment.

    Resolved once per logical operation and passed explicitly to every
    gateway call, so a test-mode attempt can never pick up production
    credentials halfway through.
    """

    model_config = ConfigDict(frozen=True)

    environment: GatewayEnvironment
    provider: str = "phonepe"
    base_url: str
    client_id: str
    client_secret: str = Field(repr=False)
    client_version: str = "1"
    timeout_seconds: float = 10.0
    redirect_url: str
    expire_after_seconds: int = 1200
    currency: str = "INR"

    @property
    def is_production(self) -> bool:
        """Check if this is the production environment."""
        return self.environment is GatewayEnvironment.PRODUCTION


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./storefront_payments.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Payment Gateway Configuration
    payment_environment: GatewayEnvironment = Field(
        default=GatewayEnvironment.TEST,
        description="Gateway environment used for new checkouts (test/production)",
    )
    gateway_provider: str = Field(default="phonepe", description="Gateway provider name")
    gateway_test_base_url: str = Field(
        default="https://api-preprod.phonepe.com/apis/pg-sandbox",
        description="Sandbox API base URL",
    )
    gateway_test_client_id: str = Field(default="", description="Sandbox client id")
    gateway_test_client_secret: str = Field(default="", description="Sandbox client secret")
    gateway_production_base_url: str = Field(
        default="https://api.phonepe.com/apis/pg",
        description="Production API base URL",
    )
    gateway_production_client_id: str = Field(default="", description="Production client id")
    gateway_production_client_secret: str = Field(
        default="", description="Production client secret"
    )
    gateway_client_version: str = Field(default="1", description="Client version sent with token requests")
    gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for every gateway request (seconds)"
    )
    gateway_redirect_url: str = Field(
        default="http://localhost:3000/payment/callback",
        description="Storefront page the provider redirects the shopper back to",
    )
    gateway_order_expiry_seconds: int = Field(
        default=1200, gt=0, description="Hosted payment page expiry (seconds)"
    )
    payment_currency: str = Field(default="INR", description="Checkout currency")
    merchant_order_prefix: str = Field(default="YBT", description="Prefix for merchant order ids")

    # Order Service Configuration
    order_service_url: str = Field(
        default="http://localhost:8001", description="Order management service base URL"
    )
    order_service_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Order service request timeout (seconds)"
    )

    # Workers
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")
    sweep_interval_seconds: float = Field(
        default=300.0, description="Stale transaction sweep interval (seconds)"
    )
    sweep_stale_after_seconds: int = Field(
        default=1800, description="Age after which a non-terminal transaction is stale"
    )

    # Application Configuration
    app_name: str = Field(default="storefront-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("payment_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    def resolve_gateway_config(
        self, environment: Optional[GatewayEnvironment] = None
    ) -> GatewayConfig:
        """
        Build the gateway configuration for one environment.

        Args:
            environment: Gateway environment (defaults to payment_environment)

        Returns:
            GatewayConfig: Immutable configuration for the environment

        Raises:
            ConfigurationError: If credentials for the environment are missing
        """
        environment = GatewayEnvironment(environment or self.payment_environment)

        if environment is GatewayEnvironment.PRODUCTION:
            base_url = self.gateway_production_base_url
            client_id = self.gateway_production_client_id
            client_secret = self.gateway_production_client_secret
        else:
            base_url = self.gateway_test_base_url
            client_id = self.gateway_test_client_id
            client_secret = self.gateway_test_client_secret

        if not client_id or not client_secret:
            raise ConfigurationError(
                f"Gateway credentials are not configured for the {environment.value} environment"
            )

        return GatewayConfig(
            environment=environment,
            provider=self.gateway_provider,
            base_url=base_url.rstrip("/"),
            client_id=client_id,
            client_secret=client_secret,
            client_version=self.gateway_client_version,
            timeout_seconds=self.gateway_timeout_seconds,
            redirect_url=self.gateway_redirect_url,
            expire_after_seconds=self.gateway_order_expiry_seconds,
            currency=self.payment_currency,
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
