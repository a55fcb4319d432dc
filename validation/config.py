"""
Configuration validation for BlogMailer's delivery queue.

Provides a pydantic v2 settings model for the numeric limits that drive the
queue (batch size, attempt ceiling, retry curve, throttling, retention) with
fail-fast behavior and sensible defaults. Values come from keyword arguments
(e.g. a config.json dict) or BLOGMAILER_-prefixed environment variables.
"""

from pydantic import Field, field_validator, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import logging

log = logging.getLogger('BlogMailer.config')

# Emails per batch for each plan tier
TIER_BATCH_SIZES = {
    'free': 50,
    'starter': 100,
    'pro': 500,
}


class MailerConfig(BaseSettings):
    """
    Delivery queue configuration with validation.

    All fields are optional tunables:
        tier: Plan tier selecting the default batch size (default: free)
        batch_size: Explicit emails-per-batch override (default: tier value)
        max_attempts: Delivery attempts before a job fails (default: 3, range: 1-10)
        retry_base_minutes: First retry delay (default: 5)
        retry_factor: Growth factor between retries (default: 3 -> 5/15/45 min)
        retry_cap_minutes: Longest retry delay (default: 60)
        send_delay_ms: Pause between individual sends (default: 100ms)
        max_drain_iterations: Batch cap for a "send now" drain (default: 20)
        claim_timeout_minutes: Age at which an unreported claim is released (default: 30)
        process_interval_minutes: Scheduled processing interval (default: 5)
        queue_retention_days: Days to keep finished jobs (default: 30, range: 1-365)
    """

    model_config = SettingsConfigDict(
        env_prefix="BLOGMAILER_",
        extra="ignore",
    )

    tier: str = 'free'
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)
    max_attempts: int = Field(default=3, ge=1, le=10)

    # Retry curve (minutes)
    retry_base_minutes: float = Field(default=5.0, ge=1.0, le=60.0)
    retry_factor: float = Field(default=3.0, ge=1.5, le=10.0)
    retry_cap_minutes: float = Field(default=60.0, ge=1.0, le=1440.0)

    # Throttling
    send_delay_ms: float = Field(default=100.0, ge=0.0, le=5000.0)
    max_drain_iterations: int = Field(default=20, ge=1, le=1000)

    # Maintenance
    claim_timeout_minutes: float = Field(default=30.0, ge=1.0, le=1440.0)
    process_interval_minutes: float = Field(default=5.0, ge=1.0, le=1440.0)
    queue_retention_days: int = Field(default=30, ge=1, le=365)

    log_level: str = 'info'

    @field_validator('tier', mode='before')
    @classmethod
    def validate_tier(cls, v):
        """Validate tier is one of: free, starter, pro."""
        valid = tuple(TIER_BATCH_SIZES)
        if isinstance(v, str) and v.strip().lower() in valid:
            return v.strip().lower()
        raise ValueError(f"tier must be one of {valid}, got: {v}")

    @field_validator('log_level', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log_level is a known level name."""
        valid = ('trace', 'debug', 'info', 'warning', 'error')
        if isinstance(v, str) and v.lower() in valid:
            return v.lower()
        raise ValueError(f"log_level must be one of {valid}, got: {v}")

    @field_validator('retry_cap_minutes', mode='after')
    @classmethod
    def validate_retry_cap(cls, v: float, info) -> float:
        """Cap must not undercut the first retry delay."""
        base = info.data.get('retry_base_minutes')
        if base is not None and v < base:
            raise ValueError('retry_cap_minutes must be >= retry_base_minutes')
        return v

    @property
    def effective_batch_size(self) -> int:
        """Emails per batch: explicit override, else the tier's limit."""
        if self.batch_size is not None:
            return self.batch_size
        return TIER_BATCH_SIZES[self.tier]

    @property
    def send_delay_seconds(self) -> float:
        return self.send_delay_ms / 1000.0

    @property
    def claim_timeout_seconds(self) -> float:
        return self.claim_timeout_minutes * 60.0

    def log_config(self) -> None:
        """Log the effective queue configuration."""
        source = "override" if self.batch_size is not None else f"tier={self.tier}"
        log.info(
            f"BlogMailer config: batch_size={self.effective_batch_size} ({source}), "
            f"max_attempts={self.max_attempts}, "
            f"retry={self.retry_base_minutes:g}m x{self.retry_factor:g} "
            f"(cap {self.retry_cap_minutes:g}m), "
            f"send_delay={self.send_delay_ms:g}ms, "
            f"drain_cap={self.max_drain_iterations}, "
            f"claim_timeout={self.claim_timeout_minutes:g}m, "
            f"interval={self.process_interval_minutes:g}m, "
            f"retention={self.queue_retention_days}d"
        )
        if self.send_delay_ms == 0:
            log.warning("Send throttle disabled: emails will be sent back-to-back")


def validate_config(config_dict: dict) -> tuple[Optional[MailerConfig], Optional[str]]:
    """
    Validate configuration dictionary and return MailerConfig or error message.

    Args:
        config_dict: Dictionary containing configuration values

    Returns:
        Tuple of (MailerConfig, None) on success,
        or (None, error_message) on validation failure
    """
    try:
        config = MailerConfig(**config_dict)
        return (config, None)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = '.'.join(str(loc) for loc in error['loc'])
            msg = error['msg']
            errors.append(f"{field}: {msg}")
        error_message = '; '.join(errors)
        return (None, error_message)


# Re-export ValidationError for external use
__all__ = ['MailerConfig', 'TIER_BATCH_SIZES', 'validate_config', 'ValidationError']
