"""
Configuration for SimpleDB.

Settings are loaded from environment variables via pydantic-settings and
can be overridden with keyword arguments at construction time.

Invariants:
    - All settings have defaults suitable for a desktop settings file
    - Retry, backoff and timeout values are validated to be non-negative
    - The poll interval is strictly positive

How to change safely:
    - Add new settings with defaults that keep existing files compatible
    - Keep env prefixes stable; deployments pin them in service units
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class StoreSettings(BaseSettings):
    """Store configuration: key namespace, write locking, retry and read tuning."""

    # Keyspace
    key_prefix: str = Field(default="", description="Prefix applied to every logical key")
    key_suffix: str = Field(default="", description="Suffix applied to every logical key")

    # Cross-process write lock
    write_lock_timeout: float = Field(
        default=10.0, ge=0, description="Seconds to wait for the cross-process write lock"
    )
    write_lock_dir: str | None = Field(
        default=None, description="Directory for lock files (system temp dir if unset)"
    )

    # Busy/locked retry
    max_retries: int = Field(default=5, ge=0, description="Retries after the first attempt")
    initial_backoff_ms: int = Field(default=25, ge=0, description="First backoff delay")
    max_backoff_ms: int = Field(default=1000, ge=0, description="Backoff delay cap")

    # Connections
    write_busy_timeout_ms: int = Field(
        default=100, ge=0, description="Engine busy timeout on the read-write connection"
    )
    read_busy_timeout_ms: int = Field(
        default=5000, ge=0, description="Engine busy timeout on read-only connections"
    )
    read_cache_size: int = Field(default=-32768, description="PRAGMA cache_size for reads (negative = KiB)")
    read_mmap_size: int = Field(default=134217728, ge=0, description="PRAGMA mmap_size for reads")

    model_config = {"env_prefix": "SIMPLEDB_"}

    @model_validator(mode="after")
    def _check_backoff(self) -> StoreSettings:
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("max_backoff_ms must be >= initial_backoff_ms")
        return self


class FeedSettings(BaseSettings):
    """Change feed poller configuration."""

    poll_interval_ms: int = Field(default=500, gt=0, description="Delay between log polls")
    replay_existing: bool = Field(
        default=False, description="Deliver the whole change history instead of starting from now"
    )
    dispose_timeout_ms: int = Field(
        default=1000, ge=0, description="How long disposal waits for the poll loop to exit"
    )

    model_config = {"env_prefix": "SIMPLEDB_FEED_"}


class LoggingSettings(BaseSettings):
    """Process logging configuration used by the command-line tool."""

    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    log_format: Literal["text", "json"] = Field(default="text")

    model_config = {"env_prefix": "SIMPLEDB_"}
