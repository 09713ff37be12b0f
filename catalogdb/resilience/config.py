from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RetryConfig(BaseModel):
    """Backoff policy for retrying a whole operation, e.g. opening a database client.

    Waits follow full-jitter exponential backoff:
    https://aws.amazon.com/blogs/architecture/exponential-backoff-and-jitter/
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Maximum attempts, the first one included")
    max_delay_seconds: float | None = Field(default=None, ge=0, description="Give up after this long (None = unlimited)")
    wait_min: float = Field(default=1.0, ge=0, description="Minimum wait time in seconds")
    wait_max: float = Field(default=30.0, ge=0, description="Maximum wait time in seconds")
    multiplier: float = Field(default=1.0, ge=0, description="Wait multiplier")
    exp_base: float = Field(default=2.0, ge=1, description="Exponential base")

    retry_on_exceptions: tuple[type[Exception], ...] | None = Field(
        default=None,
        description="Exception types that trigger retry (None = all exceptions)",
    )
    never_retry_on: tuple[type[Exception], ...] | None = Field(
        default=None,
        description="Exception types never retried (takes precedence over retry_on_exceptions)",
    )

    reraise: bool = Field(default=True, description="Reraise the last exception after all attempts fail")
