import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/ppc_optimizer"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres hands out postgresql:// URLs; the async engine needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    secret_key: str = "change-me-in-production"
    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Advertising platform (MCP server)
    platform_mcp_url: str = ""
    platform_client_id: str = ""
    platform_access_token: str = ""
    platform_profile_id: str = ""

    # Statistics engine
    min_samples: int = 7
    significance_level: float = 0.05
    anomaly_z_threshold: float = 2.0
    anomaly_window: int = 7

    # Forecasting
    forecast_lookback_days: int = 30
    forecast_min_r_squared: float = 0.5
    fallback_interval_multiplier: float = 2.0
    fallback_min_relative_width: float = 0.25

    # Impact simulation
    budget_ceiling_factor: float = 1.5
    budget_decrease_marginal_efficiency: float = 0.7

    # Implementation queue
    queue_max_concurrent: int = 3
    apply_max_attempts: int = 3
    apply_backoff_seconds: float = 0.5

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.min_samples < 3:
            raise ValueError("MIN_SAMPLES must be at least 3 to fit a trend line.")
        if self.queue_max_concurrent < 1:
            raise ValueError("QUEUE_MAX_CONCURRENT must be at least 1.")
        if self.apply_max_attempts < 1:
            raise ValueError("APPLY_MAX_ATTEMPTS must be at least 1.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
