from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/restaurant"
    log_level: str = "INFO"

    # Bound on catalog / table / user lookups
    upstream_timeout: float = 5.0

    # Payment gateway (Wompi-style payment links)
    gateway_base_url: str = "https://sandbox.wompi.co/v1"
    gateway_checkout_base_url: str = "https://checkout.wompi.co/l"
    gateway_private_key: str = ""
    gateway_signature_secret: str = ""
    gateway_currency: str = "COP"
    gateway_timeout: float = 10.0
    payment_redirect_url: str | None = None

    # Circuit breaker
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 30.0

    # Observability
    otlp_endpoint: str | None = None

    model_config = {"env_file": ".env"}


settings = Settings()
