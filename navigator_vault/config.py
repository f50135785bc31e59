"""
Vault Configuration — validated settings for the vault engine and its API.

Reads settings from environment variables:
    VAULT_DATABASE_PATH = <directory holding the vault>
    VAULT_SERVER_HOST / VAULT_SERVER_PORT = API bind address
    VAULT_ENCRYPTION_ALGORITHM = aes256-gcm | chacha20poly1305
    VAULT_SESSION_TTL = <seconds>
    VAULT_CLIPBOARD_TIMEOUT = <seconds>
    VAULT_KDF_TIME_COST / VAULT_KDF_MEMORY_COST / VAULT_KDF_PARALLELISM

Security Note:
    Never log the master password or derived keys. Only paths, ports and
    algorithm names are safe to log.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("navigator.vault")

SUPPORTED_ALGORITHMS = ("aes256-gcm", "chacha20poly1305")

# Argon2id cost parameters (OWASP recommendation, sub-second on commodity hardware)
DEFAULT_TIME_COST = 3
DEFAULT_MEMORY_COST = 65536  # KiB (64 MiB)
DEFAULT_PARALLELISM = 4


def default_database_path() -> Path:
    """Return the default vault directory (``$XDG_DATA_HOME/navigator-vault``)."""
    base = os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share"
    return Path(base) / "navigator-vault"


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    database_path: Path = Field(default_factory=default_database_path)
    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8765, ge=1, le=65535)
    encryption_algorithm: str = Field(default="aes256-gcm")
    session_ttl: int = Field(default=900, ge=60)
    clipboard_timeout: int = Field(default=30, ge=1)
    kdf_time_cost: int = Field(default=DEFAULT_TIME_COST, ge=1)
    kdf_memory_cost: int = Field(default=DEFAULT_MEMORY_COST, ge=8)
    kdf_parallelism: int = Field(default=DEFAULT_PARALLELISM, ge=1, le=64)

    @field_validator("encryption_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Validate the AEAD scheme is supported."""
        v = v.lower()
        if v not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported encryption algorithm: {v}")
        return v

    @model_validator(mode="after")
    def validate_kdf_memory(self) -> "VaultConfig":
        """Argon2 requires at least 8 KiB of memory per lane."""
        if self.kdf_memory_cost < 8 * self.kdf_parallelism:
            raise ValueError(
                f"kdf_memory_cost must be at least {8 * self.kdf_parallelism} KiB "
                f"for parallelism={self.kdf_parallelism}"
            )
        return self

    @classmethod
    def from_env(cls, **overrides) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values: dict = {}
        for field in cls.model_fields:
            raw = os.environ.get(f"VAULT_{field.upper()}")
            if raw is not None:
                values[field] = raw
        values.update(overrides)
        config = cls(**values)
        logger.debug(
            "Vault config loaded: path=%s algorithm=%s ttl=%ss",
            config.database_path, config.encryption_algorithm, config.session_ttl,
        )
        return config
