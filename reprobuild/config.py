"""Configuration settings for reprobuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "reprobuild"


def _default_work_dir() -> Path:
    """Return the default directory for per-target build workspaces."""
    return Path.home() / ".local" / "share" / "reprobuild" / "work"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "reprobuild" / "runs.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the REPROBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPROBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    source_dir: Path = Field(
        default_factory=Path.cwd,
        description="Git checkout of the application to build",
    )
    registry_path: Path | None = Field(
        default=None,
        description="YAML target registry (uses the built-in catalog if not set)",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for dependency and compiler caches",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-target build workspaces",
    )
    output_dir: Path = Field(
        default_factory=lambda: Path("build-output"),
        description="Root directory for installed trees, archives and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Run history database connection URL",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    container_runtime: Literal["docker", "podman", "none"] = Field(
        default="docker",
        description="Container runtime used to isolate builds ('none' runs locally)",
    )
    pin_mode: Literal["worktree", "in-place"] = Field(
        default="worktree",
        description="How commits are materialized: isolated worktree or in-place checkout",
    )
    package_name: str = Field(
        default="app",
        min_length=1,
        description="Prefix of archive names and their top-level directory",
    )
    configure_flags: list[str] = Field(
        default_factory=lambda: ["--disable-tests", "--disable-bench"],
        description="Configure flags applied to every target",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Maximum targets built at once in parallel mode",
    )
    jobs: int | None = Field(
        default=None,
        ge=1,
        description="Compiler parallelism per target (uses CPU count if not set)",
    )

    # Compiler object cache
    ccache_enabled: bool = Field(
        default=True,
        description="Use ccache to accelerate recompilation",
    )
    ccache_max_size: str = Field(
        default="5G",
        description="Maximum size of each per-target ccache",
    )
    ccache_launcher_dir: str = Field(
        default="/usr/lib/ccache",
        description="Directory of ccache compiler wrappers, prepended to PATH",
    )

    # Signing
    signing_key: str | None = Field(
        default=None,
        description="GPG key used to sign manifests",
    )
    signing_url: str | None = Field(
        default=None,
        description="Remote signing service endpoint",
    )
    signing_token: SecretStr | None = Field(
        default=None,
        description="Bearer token sent to the remote signing service",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=4 * 3600,
        ge=60,
        description="Timeout for a single pipeline step",
    )
    git_timeout: int = Field(
        default=300,
        ge=10,
        description="Timeout for git operations",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
