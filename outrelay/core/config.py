"""Runtime settings for the outbox dispatcher."""

from enum import Enum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from outrelay.core.backoff import BackoffPolicy


class PermanentFailureMode(Enum):
    """Strategy for permanent failures (unknown kind, malformed payload).

    RETRY: Retry like any transient failure until attempts run out.
    DEAD_LETTER: Dead-letter on the first failure.
    """

    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class DispatcherSettings(BaseSettings):
    """Settings read from ``OUTRELAY_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="OUTRELAY_",
        env_file=".env",
        extra="ignore",
    )

    batch_size: int = Field(default=25, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    handler_timeout: float = Field(default=30.0, gt=0)
    lease_timeout: float = Field(default=300.0, gt=0)
    backoff_base: float = Field(default=300.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=18_000.0, ge=0)
    poll_interval: float = Field(default=10.0, gt=0)
    permanent_failure_mode: PermanentFailureMode = PermanentFailureMode.RETRY
    stale_alert_minutes: int = Field(default=30, ge=1)
    metrics_ttl: float = Field(default=15.0, ge=0)

    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "outrelay"
    job_token: str | None = None
    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_lease_outlasts_handler(self) -> "DispatcherSettings":
        # The lease is renewed per event, so it only has to cover one handler call.
        if self.lease_timeout <= self.handler_timeout:
            raise ValueError(
                f"lease_timeout ({self.lease_timeout}s) must exceed "
                f"handler_timeout ({self.handler_timeout}s)"
            )
        return self

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base=self.backoff_base,
            multiplier=self.backoff_multiplier,
            max_delay=self.backoff_max,
        )
