"""
Configuration management using Pydantic settings.

Loads configuration from environment variables and .env file.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the directory where this config file is located
_CONFIG_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Sync and remediation job configuration."""
    
    model_config = SettingsConfigDict(
        env_file=_CONFIG_DIR / ".env",
        env_prefix="AUTHZ_SYNC_",
        case_sensitive=False,
        extra="ignore",
    )
    
    # Canonical authorization store (staging, registry, review, termination)
    canonical_dsn: str
    
    # Source systems. A source without a DSN cannot be synced.
    directory_dsn: Optional[str] = None
    security_admin_dsn: Optional[str] = None
    legacy_role_dsn: Optional[str] = None
    
    # Connection pools (batch jobs only, never shared with request handlers)
    pool_min_size: int = 1
    pool_max_size: int = 4
    command_timeout: float = 600.0
    connect_retries: int = 3
    
    # Pipeline settings
    load_batch_size: int = 1000
    run_timeout_seconds: float = 3600.0  # 0 disables the wall-clock budget
    remediation_marking: Literal["per_decision", "batch"] = "per_decision"
    
    # Local SQLite run ledger
    ledger_db_path: str = "authz_sync_runs.db"
    
    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"
    
    def source_dsn(self, source: str) -> Optional[str]:
        """DSN configured for a source adapter name."""
        return {
            "LDAP": self.directory_dsn,
            "SC": self.security_admin_dsn,
            "TMMIN": self.legacy_role_dsn,
        }.get(source.upper())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
