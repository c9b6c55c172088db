import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./storage_credits.db")

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    kafka_topic: str = os.getenv("KAFKA_TOPIC", "storage_credit_events")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "storage-credit-exchange")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    # Payment charge provider (Coinbase Commerce compatible)
    commerce_api_url: str = os.getenv("COMMERCE_API_URL", "https://api.commerce.coinbase.com")
    commerce_api_key: str = os.getenv("COMMERCE_API_KEY", "")
    commerce_api_version: str = os.getenv("COMMERCE_API_VERSION", "2018-03-22")
    charge_currency: str = os.getenv("CHARGE_CURRENCY", "USD")

    # Price feeds
    arweave_price_url: str = os.getenv("ARWEAVE_PRICE_URL", "https://arweave.net/price")
    token_price_url: str = os.getenv(
        "TOKEN_PRICE_URL",
        "https://api.coingecko.com/api/v3/simple/price?ids=arweave&vs_currencies=usd",
    )
    token_price_id: str = os.getenv("TOKEN_PRICE_ID", "arweave")
    external_timeout_seconds: float = float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", "10"))

    # Business rules
    default_profit_margin_percent: float = float(os.getenv("DEFAULT_PROFIT_MARGIN_PERCENT", "25"))
    platform_fee_percentage: float = float(os.getenv("PLATFORM_FEE_PERCENTAGE", "10"))
    minimum_total_price: float = float(os.getenv("MINIMUM_TOTAL_PRICE", "0.5"))
    price_tolerance: float = float(os.getenv("PRICE_TOLERANCE", "0.01"))
    listing_epsilon_gb: float = float(os.getenv("LISTING_EPSILON_GB", "0.001"))
    settlement_ttl_minutes: int = int(os.getenv("SETTLEMENT_TTL_MINUTES", "60"))

    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "30"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

settings = Settings()
