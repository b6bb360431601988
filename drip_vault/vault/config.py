"""
Vault Configuration — Validated engine settings.

Reads overrides from environment variables:
    DRIP_VAULT_KDF_ITERATIONS = <int>
    DRIP_VAULT_DAILY_LIMIT = <int>
    DRIP_VAULT_DAY_START_HOUR = <0-23>
    DRIP_VAULT_CHUNK_SIZE = <int>
    DRIP_VAULT_RESHUFFLE_SCOPE = suffix | full
    DRIP_VAULT_DOMAIN_SEPARATION = true | false
    DRIP_VAULT_TEMP_DIR = <path>

Security Note:
    Never log key material. Only settings are logged here.
"""
import os
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("drip_vault.vault")

_ENV_PREFIX = "DRIP_VAULT_"

DEFAULT_KDF_ITERATIONS = 120_000
DEFAULT_DAILY_LIMIT = 7
DEFAULT_DAY_START_HOUR = 7
DEFAULT_CHUNK_SIZE = 64 * 1024


def _env(name: str) -> Optional[str]:
    value = os.environ.get(f"{_ENV_PREFIX}{name}")
    if value is None or value.strip() == "":
        return None
    return value.strip()


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=1)
    daily_limit: int = Field(default=DEFAULT_DAILY_LIMIT, ge=1)
    day_start_hour: int = Field(default=DEFAULT_DAY_START_HOUR, ge=0, le=23)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1024)
    reshuffle_scope: str = Field(default="suffix")
    domain_separation: bool = True
    temp_dir: Optional[Path] = None

    @field_validator("reshuffle_scope")
    @classmethod
    def validate_reshuffle_scope(cls, v: str) -> str:
        """Validate the reconcile reshuffle scope is supported."""
        v = v.lower()
        if v not in ("suffix", "full"):
            raise ValueError(f"Unsupported reshuffle scope: {v}")
        return v

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig from DRIP_VAULT_* environment variables.

        Unset variables keep their defaults.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        for name in (
            "kdf_iterations",
            "daily_limit",
            "day_start_hour",
            "chunk_size",
            "reshuffle_scope",
            "domain_separation",
            "temp_dir",
        ):
            raw = _env(name.upper())
            if raw is not None:
                values[name] = raw
        config = cls(**values)
        logger.debug(
            "Vault config: iterations=%d daily_limit=%d day_start=%02d:00 scope=%s",
            config.kdf_iterations,
            config.daily_limit,
            config.day_start_hour,
            config.reshuffle_scope,
        )
        return config
