from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .alerts import AlertThresholds


class Settings(BaseSettings):
    """Service settings, read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "SysWatch"
    APP_VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 5004
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    CORS_ORIGINS: List[str] = ["*"]

    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./metrics.db"
    DATABASE_POOL_SIZE: int = Field(default=20, ge=1)
    DATABASE_POOL_TIMEOUT: float = Field(default=30.0, gt=0)

    # Collection (seconds)
    METRICS_INTERVAL: float = Field(default=5.0, gt=0)
    CLEANUP_INTERVAL: float = Field(default=86400.0, gt=0)
    DATA_RETENTION_DAYS: int = Field(default=30, ge=1)

    # Alerting
    ALERT_CHECK_INTERVAL: float = Field(default=30.0, gt=0)
    ALERT_COOLDOWN_MINUTES: float = Field(default=10.0, ge=0)
    ALERT_CPU_THRESHOLD: float = 80.0
    ALERT_MEMORY_THRESHOLD: float = 85.0
    ALERT_DISK_THRESHOLD: float = 90.0
    ALERT_TEMP_THRESHOLD: float = 75.0
    ALERT_LOAD_THRESHOLD: float = 5.0
    AUTO_RESOLVE_ENABLED: bool = True

    # Live subscribers
    WS_HEARTBEAT_INTERVAL: float = Field(default=30.0, gt=0)

    # Kafka alert fan-out (disabled when unset)
    KAFKA_BOOTSTRAP_SERVERS: Optional[str] = None
    KAFKA_ALERTS_TOPIC: str = "alerts"

    def thresholds(self) -> AlertThresholds:
        return AlertThresholds(
            cpu=self.ALERT_CPU_THRESHOLD,
            memory=self.ALERT_MEMORY_THRESHOLD,
            disk=self.ALERT_DISK_THRESHOLD,
            temperature=self.ALERT_TEMP_THRESHOLD,
            load=self.ALERT_LOAD_THRESHOLD,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
