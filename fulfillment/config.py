"""
Application configuration using Pydantic Settings
"""

from typing import List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    # Redis (shared cache and Celery broker)
    redis_url: str = "redis://localhost:6379/4"
    
    # Cache TTLs (seconds)
    catalog_cache_ttl: int = 1800  # 30 minutes
    order_cache_ttl: int = 604800  # 7 days
    webhook_dedup_ttl: int = 86400  # 24 hours
    provider_token_ttl: int = 2592000  # 30 days
    
    # Outbound provider calls
    provider_timeout_seconds: float = 30.0
    provider_max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    
    # Per-order write lock (seconds)
    order_lock_timeout_seconds: int = 30
    order_lock_wait_seconds: float = 10.0
    
    # Ride provider (OAuth2 + server token)
    ride_api_key: str = ""
    ride_client_id: str = ""
    ride_client_secret: str = ""
    ride_sandbox_mode: bool = True
    ride_token_url: str = "https://login.uber.com/oauth/v2/token"
    ride_authorize_url: str = "https://login.uber.com/oauth/v2/authorize"
    ride_token_safety_margin_seconds: int = 60
    
    # Food delivery provider (signed JWT per request)
    food_developer_id: str = ""
    food_key_id: str = ""
    food_signing_secret: str = ""
    food_base_url: str = "https://openapi.doordash.com/drive/v2"
    food_jwt_ttl_seconds: int = 300
    
    # Grocery delivery provider (static bearer key + partner id)
    grocery_api_key: str = ""
    grocery_partner_id: str = ""
    grocery_webhook_secret: str = ""
    grocery_sandbox_mode: bool = True
    
    # Service SLA (minutes per priority)
    sla_low_minutes: int = 1440
    sla_normal_minutes: int = 240
    sla_high_minutes: int = 60
    sla_urgent_minutes: int = 15
    
    # Default order currency
    default_currency: str = "USD"
    
    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 3006
    api_debug: bool = False
    cors_origins: str = "http://localhost:3000"
    
    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    
    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.cors_origins.split(",")]
    
    @property
    def ride_base_url(self) -> str:
        if self.ride_sandbox_mode:
            return "https://sandbox-api.uber.com/v1.2"
        return "https://api.uber.com/v1.2"
    
    @property
    def grocery_base_url(self) -> str:
        if self.grocery_sandbox_mode:
            return "https://sandbox-api.instacart.com/v2"
        return "https://api.instacart.com/v2"
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
