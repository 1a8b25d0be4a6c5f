############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# settings.py: Application configuration and environment settings
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Application settings using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    try:
        from importlib.metadata import version
        return version("genrouter")
    except Exception:
        pass
    # Fallback: read pyproject.toml directly (works in dev without pip install)
    try:
        import tomllib
        toml_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except Exception:
        return "0.0.0"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.prod"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "GenRouter"
    app_version: str = Field(default_factory=_get_version)
    debug: bool = False
    reload: bool = False

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./genrouter.db")
    database_echo: bool = False

    # Generation backends
    comfyui_api_url: str = "http://localhost:8188"
    comfyui_remote_urls: Union[List[str], str] = Field(default_factory=list)
    local_backend_priority: int = 2
    remote_backend_priority: int = 1

    # Backend client
    backend_request_timeout: float = 15.0
    backend_retry_attempts: int = 2
    backend_retry_backoff: float = 1.0
    backend_ping_timeout: float = 2.0

    # Health checks
    health_check_interval: float = 30.0
    health_stale_after: float = 5.0
    health_probe_timeout: float = 5.0

    # Queue monitor
    dispatch_interval: float = 5.0
    dispatch_batch_size: int = 4
    stuck_job_grace_seconds: float = 120.0
    max_processing_seconds: float = 1800.0  # 30 minutes

    # Per-user limits (0 = unlimited)
    max_active_jobs_per_user: int = 2

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    # Observability
    metrics_enabled: bool = True

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("comfyui_remote_urls", mode="before")
    @classmethod
    def parse_remote_urls(cls, v):
        """Parse remote backend URLs from a comma-separated string or list."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [url.strip().rstrip("/") for url in v if url and url.strip()]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",")]
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
