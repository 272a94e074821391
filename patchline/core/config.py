"""Configuration management for patchline."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

from patchline.core.utils import normalize_branch

logger = structlog.get_logger()


class DownloadConfig(BaseModel):
    """Download engine configuration."""

    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    chunk_size: int = Field(
        default=64 * 1024,
        description="Bytes written per chunk; progress is reported after each"
    )
    max_attempts: int = Field(default=4, description="Attempt ceiling for retryable failures")
    backoff_step: float = Field(
        default=2.0,
        description="Linear backoff step in seconds (attempt N waits N * step)"
    )
    min_artifact_bytes: int = Field(
        default=1,
        description="Artifacts advertised smaller than this are treated as missing"
    )
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    user_agent: str = Field(default="patchline/0.1.0", description="User-Agent header")

    @field_validator("timeout", "backoff_step")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate timing values."""
        if v < 0:
            raise ValueError("Timing values must be non-negative")
        return v

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate chunk size."""
        if v <= 0:
            raise ValueError("Chunk size must be positive")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate attempt ceiling."""
        if v < 1:
            raise ValueError("Max attempts must be at least 1")
        return v

    @field_validator("min_artifact_bytes")
    @classmethod
    def validate_min_artifact_bytes(cls, v: int) -> int:
        """Validate placeholder threshold."""
        if v < 0:
            raise ValueError("Minimum artifact size must be non-negative")
        return v


class CacheConfig(BaseModel):
    """Version cache configuration."""

    versions_ttl: int = Field(
        default=30 * 60,
        description="Time to live for version lists and patch chains in seconds"
    )
    probe_ttl: int = Field(
        default=60 * 60,
        description="Time to live for connectivity/speed results in seconds"
    )

    @field_validator("versions_ttl", "probe_ttl")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Validate TTL value."""
        if v < 0:
            raise ValueError("TTL must be non-negative")
        return v


class OfficialConfig(BaseModel):
    """Authoritative distribution endpoint configuration."""

    enabled: bool = Field(default=True, description="Consult the authoritative source")
    api_base_url: str = Field(
        default="https://account-data.hytale.com/patches",
        description="Patches API base URL"
    )
    metadata_ttl: int = Field(default=15 * 60, description="Patch metadata cache TTL in seconds")
    max_auth_retries: int = Field(default=2, description="Token-refresh attempts on 401/403")
    failure_window: float = Field(
        default=10 * 60,
        description="Seconds during which a failure marks the source unreachable"
    )
    failure_threshold: int = Field(
        default=1,
        description="Failures within the window needed to mark the source unreachable"
    )
    user_agent: str | None = Field(
        default=None,
        description="User-Agent for API calls, defaults to download.user_agent"
    )
    client_headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra client-identifying headers sent with every request"
    )

    @field_validator("max_auth_retries", "failure_threshold")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        """Validate retry and threshold counts."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Strip trailing slash from the base URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid API URL: {v}")
        return v.rstrip("/")


class AppConfig(BaseModel):
    """Application configuration."""

    # Directory settings
    config_dir: Path = Field(
        default=Path.home() / ".config" / "patchline",
        description="Configuration directory"
    )
    data_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "patchline",
        description="Data directory (cache, transient artifacts)"
    )
    mirrors_dir: Path | None = Field(
        default=None,
        description="Mirror descriptor directory, defaults to <data_dir>/mirrors"
    )
    install_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "patchline" / "game",
        description="Game installation directory"
    )

    butler_path: Path | None = Field(
        default=None,
        description="Patch applier executable, looked up on PATH if unset"
    )

    # Update behaviour
    default_branch: str = Field(default="release", description="Branch used when none is given")
    diff_only_branches: list[str] = Field(
        default_factory=list,
        description="Branches without full builds, in addition to those declared by mirrors"
    )
    max_diff_chain_length: int = Field(
        default=2,
        description="Longest diff chain used while the authoritative source is reachable"
    )

    download: DownloadConfig = Field(default_factory=DownloadConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    official: OfficialConfig = Field(default_factory=OfficialConfig)

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @property
    def resolved_mirrors_dir(self) -> Path:
        """Mirror descriptor directory."""
        return self.mirrors_dir or self.data_dir / "mirrors"

    @property
    def cache_file(self) -> Path:
        """Version cache file."""
        return self.data_dir / "cache" / "versions.json"

    @property
    def artifacts_dir(self) -> Path:
        """Directory for transient downloaded artifacts."""
        return self.data_dir / "artifacts"

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "patchline" / "config.json"

        if config_file.exists():
            with open(config_file, encoding="utf-8") as f:
                data = json.load(f)
                return cls(**data)

        # Return defaults
        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("default_branch")
    @classmethod
    def validate_default_branch(cls, v: str) -> str:
        """Normalize the default branch name."""
        return normalize_branch(v)

    @field_validator("diff_only_branches")
    @classmethod
    def validate_diff_only_branches(cls, v: list[str]) -> list[str]:
        """Normalize diff-only branch names."""
        return [normalize_branch(b) for b in v]

    @field_validator("max_diff_chain_length")
    @classmethod
    def validate_max_diff_chain_length(cls, v: int) -> int:
        """Validate chain length threshold."""
        if v < 0:
            raise ValueError("Max diff chain length must be non-negative")
        return v

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
