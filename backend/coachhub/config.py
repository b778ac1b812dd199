from functools import lru_cache
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    env: str = Field(default="dev", alias="ENV")

    database_url: str = Field(default="", alias="DATABASE_URL")
    postgres_db: str = Field(default="coachhub", alias="POSTGRES_DB")
    postgres_user: str = Field(default="coachhub", alias="POSTGRES_USER")
    postgres_password: str = Field(default="coachhub", alias="POSTGRES_PASSWORD")
    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")

    jwt_secret: str = Field(default="secret", alias="JWT_SECRET")

    payment_provider: str = Field(default="stub", alias="PAYMENT_PROVIDER")
    payment_api_key: str = Field(default="", alias="PAYMENT_API_KEY")
    payment_currency: str = Field(default="usd", alias="PAYMENT_CURRENCY")
    gateway_timeout_seconds: float = Field(default=10.0, alias="GATEWAY_TIMEOUT_SECONDS")

    coach_response_window_hours: int = Field(default=48, alias="COACH_RESPONSE_WINDOW_HOURS")
    payment_deadline_hours: int = Field(default=24, alias="PAYMENT_DEADLINE_HOURS")
    authorization_hold_hours: int = Field(default=24, alias="AUTHORIZATION_HOLD_HOURS")
    payment_reminder_minutes: int = Field(default=60, alias="PAYMENT_REMINDER_MINUTES")
    auto_complete_grace_hours: int = Field(default=0, alias="AUTO_COMPLETE_GRACE_HOURS")
    lock_ttl_seconds: int = Field(default=300, alias="LOCK_TTL_SECONDS")
    platform_fee_percent: int = Field(default=15, alias="PLATFORM_FEE_PERCENT")

    sweep_interval_minutes: int = Field(default=5, alias="SWEEP_INTERVAL_MINUTES")
    run_scheduler: bool = Field(default=False, alias="RUN_SCHEDULER")
    sweeper_secret: str = Field(default="", alias="SWEEPER_SECRET")

    notification_webhook_url: str = Field(default="", alias="NOTIFICATION_WEBHOOK_URL")

    class Config:
        populate_by_name = True

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv(override=False)
    return Settings(**os.environ)
