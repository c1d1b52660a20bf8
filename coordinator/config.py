from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Runtime configuration for the coordination service."""

    model_config = SettingsConfigDict(env_prefix="COORD_")

    # Execution
    concurrency_limit: int = 3
    max_retries: int = 3
    retry_delay_ms: int = 500

    # Result persistence
    batch_size: int = 50
    flush_interval_ms: int = 5000
    quota_cooldown_ms: int = 60000
    final_flush_attempts: int = 3

    # Leases
    lease_expiry_minutes: int = 5
    lease_settle_ms: int = 500
    lease_field: str = "lease"
    lease_time_mode: str = "full"  # options: full, time_of_day

    # Resource mapping
    resource_escape_threshold: int = 1
    resource_failure_threshold: int = 3
    resource_cache_ttl_seconds: int = 300

    # Record layout
    work_prefix: str = "work:"
    resource_prefix: str = "resource:"
    result_field: str = "status"
    max_item_retries: int = 3

    # Store
    store_backend: str = "memory"  # options: memory, sqlite
    store_path: str = "data/records.db"
    store_quota_requests: int = 0  # 0 disables the simulated quota
    store_quota_window_seconds: float = 60.0

    worker_id: Optional[str] = None
    log_level: str = "INFO"
    log_dir: Optional[str] = None


def validate_settings(settings: Settings) -> Settings:
    """Fail fast on settings that would leave the service unable to work."""
    backend = settings.store_backend.lower()
    if backend not in ("memory", "sqlite"):
        raise ConfigurationError(f"Unknown store backend '{settings.store_backend}'")
    if backend == "sqlite" and not settings.store_path:
        raise ConfigurationError("store_path is required for the sqlite backend")
    if settings.lease_time_mode not in ("full", "time_of_day"):
        raise ConfigurationError(f"Unknown lease_time_mode '{settings.lease_time_mode}'")
    for name in ("lease_field", "result_field", "work_prefix", "resource_prefix"):
        if not getattr(settings, name):
            raise ConfigurationError(f"{name} must not be empty")
    for name in ("concurrency_limit", "max_retries", "batch_size", "final_flush_attempts"):
        if getattr(settings, name) < 1:
            raise ConfigurationError(f"{name} must be at least 1")
    if settings.lease_expiry_minutes < 1:
        raise ConfigurationError("lease_expiry_minutes must be at least 1")
    return settings


settings = Settings()
