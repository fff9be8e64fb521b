"""Configuration loading for CAFS."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cafs.errors import ConfigurationError


DEFAULT_DATA_DIR = Path.home() / ".cafs"

MiB = 1024 * 1024


def _bucket_segment(value: str) -> str:
    """Bucket names become one directory under data_dir."""
    name = value.strip()
    if not name:
        raise ValueError("must not be blank")
    if name in (".", "..") or "/" in name or "\\" in name:
        raise ValueError(f"bucket name must be a single path segment: {value!r}")
    return name


class CASConfig(BaseModel):
    """Engine and backend configuration, immutable once built."""
    model_config = ConfigDict(frozen=True)

    data_dir: Path = Field(default=DEFAULT_DATA_DIR)
    bucket_name: str = "tp-resources"
    blob_dir: Path | None = None  # Defaults to data_dir/bucket_name
    database_path: Path | None = None  # Defaults to data_dir/cafs.db

    # "blob" keeps entries as JSON documents next to the payloads,
    # "sqlite" keeps them in a table with atomic reference counting
    metadata_backend: Literal["blob", "sqlite"] = "blob"
    metadata_collection: str = "cafs_metadata"

    enable_deduplication: bool = True
    max_file_size: int = Field(default=10 * MiB, gt=0)
    default_content_type: str = "application/json"
    default_folder: str = "cafs"

    # Tool naming: strict by default (fail if SDK doesn't support canonical names)
    allow_noncanonical_tool_names: bool = False

    # Logging configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    structured_logging: bool = True  # JSON format vs human-readable
    log_file: str | None = None  # Optional file path for logs

    @model_validator(mode="before")
    @classmethod
    def _derive_paths(cls, data: Any) -> Any:
        """Fill derived paths before the model freezes."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data_dir = Path(data.get("data_dir") or DEFAULT_DATA_DIR)
        data["data_dir"] = data_dir
        bucket_name = data.get("bucket_name", "tp-resources")
        if isinstance(bucket_name, str):
            bucket_name = data["bucket_name"] = _bucket_segment(bucket_name)
            if data.get("blob_dir") is None:
                data["blob_dir"] = data_dir / bucket_name
        if data.get("database_path") is None:
            data["database_path"] = data_dir / "cafs.db"
        return data

    @field_validator("bucket_name")
    @classmethod
    def _valid_bucket(cls, value: str) -> str:
        return _bucket_segment(value)

    @field_validator("default_folder", "metadata_collection")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level


def load_config(config_path: Path | None = None) -> CASConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to ~/.cafs/config.yaml

    Returns:
        CASConfig instance

    Raises:
        ConfigurationError: If the file does not hold a mapping
    """
    if config_path is None:
        config_path = DEFAULT_DATA_DIR / "config.yaml"

    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                "Config file must contain a mapping", path=str(config_path)
            )
        return CASConfig(**data)

    return CASConfig()


def ensure_directories(config: CASConfig) -> None:
    """Ensure all required directories exist."""
    config.data_dir.mkdir(parents=True, exist_ok=True)

    if config.blob_dir:
        config.blob_dir.mkdir(parents=True, exist_ok=True)

    if config.metadata_backend == "sqlite" and config.database_path:
        config.database_path.parent.mkdir(parents=True, exist_ok=True)
