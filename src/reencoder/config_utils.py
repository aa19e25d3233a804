"""Helpers for working with the project configuration file."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from reencoder.ledger import DEFAULT_BACKEND, LEDGER_FILENAMES
from reencoder.tools import DEFAULT_FLAC_ARGS

APP_NAME = "reencoder"
CONFIG_FILENAME = "config.yaml"
CONFIG_ENV_VAR = "REENCODER_CONFIG"

DEFAULT_SCAN_WORKERS = 16
DEFAULT_ENCODE_WORKERS = 4
DEFAULT_EXTENSION = ".flac"

logger = logging.getLogger(__name__)


def default_data_dir() -> Path:
    """Return the per-user application data directory for this tool."""
    if sys.platform.startswith("win"):
        appdata = os.getenv("APPDATA")
        if not appdata:
            raise RuntimeError("Failed to locate application data folder")
        base = Path(appdata)
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        xdg_data_home = os.getenv("XDG_DATA_HOME")
        base = Path(xdg_data_home) if xdg_data_home else Path.home() / ".local" / "share"
    return base / APP_NAME


def resolve_config_path(path: Path | str | None = None) -> tuple[Path, bool]:
    """Return the config path to use and whether it was asked for explicitly."""
    if path is not None:
        return Path(path).expanduser(), True
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser(), True
    return default_data_dir() / CONFIG_FILENAME, False


def load_config(path: Path | str | None = None) -> dict[str, Any]:
    """Load the YAML configuration.

    A missing file is only an error when the path was given explicitly.
    """
    config_path, explicit = resolve_config_path(path)
    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return {}

    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TypeError(f"Config file {config_path} must contain a mapping.")
    logger.debug("Loaded configuration from %s", config_path)
    return dict(data)


class Settings(BaseModel):
    """Effective settings after merging defaults, config file and CLI options."""

    database: Path
    backend: Literal["sqlite", "json"] = DEFAULT_BACKEND
    flac_args: tuple[str, ...] = DEFAULT_FLAC_ARGS
    scan_workers: int = Field(default=DEFAULT_SCAN_WORKERS, ge=1)
    encode_workers: int = Field(default=DEFAULT_ENCODE_WORKERS, ge=1)
    extension: str = DEFAULT_EXTENSION
    log_file: Path | None = None
    log_level: str | None = None

    @field_validator("extension")
    @classmethod
    def _normalize_extension(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("extension must not be empty")
        return value if value.startswith(".") else f".{value}"

    @field_validator("flac_args", mode="before")
    @classmethod
    def _split_flac_args(cls, value: Any) -> Any:
        # A single string in the config file is treated as one argument list.
        if isinstance(value, str):
            return value.split()
        return value


def resolve_settings(config: Mapping[str, Any], **overrides: Any) -> Settings:
    """Merge config values with CLI overrides; ``None`` overrides are ignored."""
    known = set(Settings.model_fields)
    merged: dict[str, Any] = {}
    for key, value in config.items():
        if key not in known:
            logger.warning("Ignoring unknown config key: %s", key)
            continue
        merged[key] = value

    for key, value in overrides.items():
        if value is None or (key == "flac_args" and not value):
            continue
        merged[key] = value

    if merged.get("database") is None:
        backend = merged.get("backend", DEFAULT_BACKEND)
        merged["database"] = default_data_dir() / LEDGER_FILENAMES.get(
            backend, LEDGER_FILENAMES[DEFAULT_BACKEND]
        )

    return Settings.model_validate(merged)
