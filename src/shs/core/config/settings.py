"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Sovereign Health Sync configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Default to loopback so the record tools are never exposed to the LAN/WAN
    # by accident. Opt into `0.0.0.0` explicitly when you intend remote access.
    shs_host: str = "127.0.0.1"
    shs_port: int = 8001
    shs_log_level: str = "info"
    shs_allow_insecure_bind: bool = False

    # Plaintext codec fallback is refused in production.
    environment: Literal["development", "test", "production"] = "development"

    # Local cache store (SQLite)
    db_path: str = "~/.shs/cache.db"

    # Encryption (Fernet master key; per-owner keys are derived from it)
    encryption_key: str = ""

    # Remote record store (MCP endpoint). Empty selects the in-process store.
    remote_store_url: str = ""

    # Identity used by the hosted server session
    session_owner_id: str = ""

    # Reconciliation
    sync_auto: bool = True
    sync_interval_seconds: float = 300.0
    sync_batch_size: int = 5
    sync_conflict_resolution: Literal[
        "local_wins", "remote_wins", "latest_timestamp", "manual"
    ] = "latest_timestamp"
    sync_max_retries: int = 3
    sync_healthcare_priority: bool = True
    concurrent_edit_window_seconds: float = 60.0

    # Error recovery
    error_log_capacity: int = 1000
    error_log_persisted: int = 100

    @property
    def allow_plaintext_fallback(self) -> bool:
        return self.environment != "production"


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
