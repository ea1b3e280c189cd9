"""Environment-driven configuration for parameter fetching.

The fetcher is configured almost entirely through environment variables so
that it can be embedded in daemons and build scripts without plumbing
arguments through.  :class:`FetchSettings` reads them with
``pydantic-settings``; explicit instances can be passed wherever the library
accepts ``settings=`` (tests do this instead of mutating ``os.environ``).

Recognised variables:

``IPFS_GATEWAY``
    Gateway URL prefix. The request target is ``<prefix><cid>``.
``FIL_PROOFS_PARAMETER_CACHE``
    Directory holding the parameter files.
``TRUST_PARAMS``
    When set to ``1`` every integrity check is skipped. Unsafe.
``PARAMFETCH_LOG_LEVEL`` / ``PARAMFETCH_LOG_DIR``
    Logging level and optional JSONL log directory.
``PARAMFETCH_CONNECT_TIMEOUT`` / ``PARAMFETCH_READ_TIMEOUT``
    HTTP timeouts in seconds.
``PARAMFETCH_SHOW_PROGRESS``
    Disable progress bars with ``0``/``false``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import httpx
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GATEWAY = "https://proofs.filecoin.io/ipfs/"
DEFAULT_PARAM_DIR = Path("/data/lotus/folder/filecoin-proof-parameters")
TRUST_PARAMS_ENABLED = "1"

LOGGER = logging.getLogger(__name__)


class FetchSettings(BaseSettings):
    """Runtime configuration resolved from the process environment."""

    gateway: str = Field(default=DEFAULT_GATEWAY, alias="IPFS_GATEWAY")
    param_dir: Path = Field(default=DEFAULT_PARAM_DIR, alias="FIL_PROOFS_PARAMETER_CACHE")
    trust_params_flag: Optional[str] = Field(default=None, alias="TRUST_PARAMS")
    log_level: str = Field(default="INFO", alias="PARAMFETCH_LOG_LEVEL")
    log_dir: Optional[Path] = Field(default=None, alias="PARAMFETCH_LOG_DIR")
    connect_timeout_sec: float = Field(default=10.0, gt=0, alias="PARAMFETCH_CONNECT_TIMEOUT")
    read_timeout_sec: float = Field(default=60.0, gt=0, alias="PARAMFETCH_READ_TIMEOUT")
    show_progress: bool = Field(default=True, alias="PARAMFETCH_SHOW_PROGRESS")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("gateway", mode="before")
    @classmethod
    def _gateway_or_default(cls, value: object) -> object:
        # An exported-but-empty IPFS_GATEWAY means "use the default".
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_GATEWAY
        return value.strip() if isinstance(value, str) else value

    @field_validator("param_dir", mode="before")
    @classmethod
    def _param_dir_or_default(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_PARAM_DIR
        return value

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level '{value}'")
        return level

    @property
    def trust_params(self) -> bool:
        """Return ``True`` when integrity verification is bypassed."""

        return self.trust_params_flag == TRUST_PARAMS_ENABLED

    def param_path(self, name: str) -> Path:
        """Return the local path for manifest entry ``name``."""

        return self.param_dir / name

    def http_timeout(self) -> httpx.Timeout:
        """Return per-phase HTTPX timeouts derived from the settings."""

        return httpx.Timeout(
            connect=self.connect_timeout_sec,
            read=self.read_timeout_sec,
            write=self.read_timeout_sec,
            pool=self.connect_timeout_sec,
        )


def get_settings() -> FetchSettings:
    """Build a fresh :class:`FetchSettings` from the current environment."""

    settings = FetchSettings()
    LOGGER.debug(
        "settings resolved",
        extra={
            "stage": "config",
            "gateway": settings.gateway,
            "param_dir": str(settings.param_dir),
            "trust_params": settings.trust_params,
        },
    )
    return settings


__all__ = [
    "DEFAULT_GATEWAY",
    "DEFAULT_PARAM_DIR",
    "FetchSettings",
    "get_settings",
]
