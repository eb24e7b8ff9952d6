"""Application configuration for the galaxy proxy service."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_HASH_ALGORITHMS = ["sha256", "sha1"]


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ProxySettings(BaseSettings):
    """Runtime settings for the fetch-through galaxy proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    repository_name: str = env_field("galaxy-proxy", "GALAXYCACHE_REPOSITORY_NAME")
    public_base_url: str = env_field("http://localhost:8081", "GALAXYCACHE_PUBLIC_BASE_URL")
    upstream_url: str = env_field("https://galaxy.ansible.com/", "GALAXYCACHE_UPSTREAM_URL")
    github_url: str = env_field("https://github.com", "GALAXYCACHE_GITHUB_URL")
    storage_path: Path = env_field(Path("./galaxy-cache/blobs"), "GALAXYCACHE_STORAGE_PATH")
    uploads_path: Path = env_field(Path("./galaxy-cache/tmp"), "GALAXYCACHE_UPLOADS_PATH")
    metadata_database_url: str = env_field(..., "GALAXYCACHE_METADATA_DB")
    hash_algorithms: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_HASH_ALGORITHMS),
        validation_alias="GALAXYCACHE_HASH_ALGORITHMS",
    )
    metadata_max_age_seconds: int = env_field(3600, "GALAXYCACHE_METADATA_MAX_AGE")
    artifact_max_age_seconds: Optional[int] = env_field(None, "GALAXYCACHE_ARTIFACT_MAX_AGE")
    upstream_timeout_seconds: float = env_field(30.0, "GALAXYCACHE_UPSTREAM_TIMEOUT")
    bind_host: str = env_field("0.0.0.0", "GALAXYCACHE_BIND_HOST")
    bind_port: int = env_field(8081, "GALAXYCACHE_BIND_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "GALAXYCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "GALAXYCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "GALAXYCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "GALAXYCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "GALAXYCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("metadata_database_url", mode="before")
    @classmethod
    def _normalize_metadata_url(cls, value):
        if value in (None, ...):
            return value
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+aiosqlite:///{path.as_posix()}"
        return value

    @field_validator("upstream_url", mode="after")
    @classmethod
    def _ensure_trailing_slash(cls, value: str) -> str:
        return value if value.endswith("/") else value + "/"

    @field_validator("public_base_url", "github_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("hash_algorithms", mode="before")
    @classmethod
    def _split_hash_algorithms(cls, value):
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @field_validator("hash_algorithms", mode="after")
    @classmethod
    def _check_hash_algorithms(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one hash algorithm is required")
        unknown = [name for name in value if name not in hashlib.algorithms_guaranteed]
        if unknown:
            raise ValueError(f"unsupported hash algorithms: {', '.join(unknown)}")
        # shake_* digests have no fixed length.
        variable = [name for name in value if hashlib.new(name).digest_size == 0]
        if variable:
            raise ValueError(f"variable-length hash algorithms are not supported: {', '.join(variable)}")
        return value

    @property
    def repository_path(self) -> str:
        return f"/repository/{self.repository_name}"

    @property
    def repository_url(self) -> str:
        return f"{self.public_base_url}{self.repository_path}"
