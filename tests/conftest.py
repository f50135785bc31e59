"""Shared fixtures: a fast-KDF vault in a temporary directory."""
import base64
from datetime import datetime, timedelta, timezone

import orjson
import pytest

from navigator_vault.config import VaultConfig
from navigator_vault.crypto import KdfParams
from navigator_vault.vault import Vault

MASTER_PASSWORD = "my_master_password"

# Argon2id at its minimum cost; production defaults would make the suite crawl.
FAST_KDF = KdfParams(time_cost=1, memory_cost=64, parallelism=1)


class FakeClock:
    """Injectable clock for session expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def flip_ciphertext_bit(path, field: str = "ciphertext", index: int = 0) -> None:
    """Corrupt one bit of a binary field of a record file in place."""
    record = orjson.loads(path.read_bytes())
    raw = bytearray(base64.b64decode(record[field]))
    raw[index] ^= 0x01
    record[field] = base64.b64encode(bytes(raw)).decode("ascii")
    path.write_bytes(orjson.dumps(record))


@pytest.fixture
def config(tmp_path):
    return VaultConfig(
        database_path=tmp_path / "vault",
        kdf_time_cost=FAST_KDF.time_cost,
        kdf_memory_cost=FAST_KDF.memory_cost,
        kdf_parallelism=FAST_KDF.parallelism,
    )


@pytest.fixture
def vault(config):
    """An initialized vault protected by MASTER_PASSWORD."""
    v = Vault(config=config)
    v.initialize(MASTER_PASSWORD)
    yield v
    v.lock()


@pytest.fixture
def key(vault):
    k = vault.unlock(MASTER_PASSWORD)
    yield k
    k.wipe()


@pytest.fixture
def store(vault):
    return vault.store


@pytest.fixture
def clock():
    return FakeClock()
