"""
Configuration management for driveaudit.

Configuration is loaded from:
1. Environment variables (highest priority), e.g. DRIVEAUDIT_SCAN__BATCH_SIZE=200
2. config.yaml file
3. Default values (lowest priority)

Components never read settings on their own; the service layer and the CLI
build constructor arguments from a Settings instance with the helpers on
each section.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict
import yaml

from driveaudit.adapters.credentials import MUTATION_SCOPES, READ_SCOPES
from driveaudit.adapters.drive_client import RateLimiterConfig
from driveaudit.core.circuit_breaker import CircuitBreakerConfig
from driveaudit.core.scoring import (
    DEFAULT_SENSITIVE_NAME_WEIGHTS,
    DEFAULT_THRESHOLDS,
    DEFAULT_WEIGHTS,
    RiskPolicy,
)


class DriveSettings(BaseSettings):
    """Drive API client configuration."""

    page_size: int = Field(default=100, ge=1, le=1000)
    requests_per_second: float = 10.0
    burst_size: int = 20
    max_retries: int = 5
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 64.0
    timeout: float = 30.0  # Per request
    connect_timeout: float = 10.0

    def rate_limiter_config(self) -> RateLimiterConfig:
        return RateLimiterConfig(
            requests_per_second=self.requests_per_second,
            burst_size=self.burst_size,
            max_retries=self.max_retries,
            base_backoff_seconds=self.base_backoff_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )


class CircuitBreakerSettings(BaseSettings):
    """Circuit breaker configuration for the Google APIs."""

    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 60.0
    exclude_status_codes: list[int] = Field(default_factory=lambda: [400, 401, 403, 404, 410])

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            recovery_timeout=self.recovery_timeout,
            exclude_status_codes=tuple(self.exclude_status_codes),
        )


class ScanSettings(BaseSettings):
    """Scan run configuration."""

    batch_size: int = Field(default=500, ge=1)
    batch_write_retries: int = 3
    stale_timeout_seconds: int = 3 * 60 * 60  # Running scans older than this are abandoned
    max_in_memory_records: int = 10000
    max_files_per_user: int = 10000
    cancel_probe_interval: float = 2.0


class RiskSettings(BaseSettings):
    """Risk policy: rule weights and level thresholds."""

    weights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    sensitive_name_weights: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SENSITIVE_NAME_WEIGHTS)
    )
    thresholds: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    stale_days: int = 365
    many_shares_threshold: int = 10

    @field_validator("thresholds")
    @classmethod
    def validate_thresholds(cls, v: dict[str, int]) -> dict[str, int]:
        merged = {**DEFAULT_THRESHOLDS, **v}
        if not merged["critical"] > merged["high"] > merged["medium"]:
            raise ValueError("thresholds must satisfy critical > high > medium")
        return merged

    def policy(self) -> RiskPolicy:
        return RiskPolicy(
            weights={**DEFAULT_WEIGHTS, **self.weights},
            sensitive_name_weights={**DEFAULT_SENSITIVE_NAME_WEIGHTS, **self.sensitive_name_weights},
            thresholds=dict(self.thresholds),
            stale_days=self.stale_days,
            many_shares_threshold=self.many_shares_threshold,
        )


class IntegratedSettings(BaseSettings):
    """Integrated (organization-wide) scan configuration."""

    concurrency: int = Field(default=1, ge=1, le=16)
    heartbeat_timeout_seconds: int = 300  # Worker considered detached after this


class BulkSettings(BaseSettings):
    """Bulk permission mutation configuration."""

    max_files_per_request: int = Field(default=100, ge=1)


class DelegationSettings(BaseSettings):
    """
    Domain-Wide Delegation configuration.

    The service account must be authorized in the Google Workspace admin
    console for the configured scopes. ``admin_email`` is impersonated for
    directory listing; each member is impersonated for their own scan.
    """

    key_file: str | None = None
    admin_email: str | None = None
    allow_mutations: bool = False

    @property
    def scopes(self) -> list[str]:
        return list(MUTATION_SCOPES if self.allow_mutations else READ_SCOPES)


class StorageSettings(BaseSettings):
    """Document store configuration."""

    url: str = "sqlite+aiosqlite:///driveaudit.db"
    echo: bool = False


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_format: bool = False
    file: str | None = None


class Settings(BaseSettings):
    """Main settings class that combines all configuration sections."""

    model_config = SettingsConfigDict(
        env_prefix="DRIVEAUDIT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    drive: DriveSettings = Field(default_factory=DriveSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    integrated: IntegratedSettings = Field(default_factory=IntegratedSettings)
    bulk: BulkSettings = Field(default_factory=BulkSettings)
    delegation: DelegationSettings = Field(default_factory=DelegationSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs and must not mask the environment
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_yaml_config(path: Path | None = None) -> dict:
    """Load configuration from YAML file."""
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path("config/config.yaml"),
            Path.home() / ".driveaudit" / "config.yaml",
            Path("/etc/driveaudit/config.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path and path.exists():
        with open(path) as f:
            return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    yaml_config = load_yaml_config()
    return Settings(**yaml_config)


def reload_settings() -> Settings:
    """Force reload of settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
