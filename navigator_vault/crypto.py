"""
Vault Crypto Core — Key derivation, authenticated encryption and record naming.

Implements the cryptographic layer of the vault:
- Master key: Argon2id(master_password, salt) → 32-byte key (never persisted)
- Verification: Argon2id PHC hash with its own salt, checked in constant time
- Sub-keys: HKDF(master_key, "navigator-vault-records" | "navigator-vault-names")
- Records: AEAD (AES-256-GCM or ChaCha20-Poly1305) → [nonce 12B][payload + tag 16B]
- Record names: HMAC-SHA256(names_key, entry_id), hex encoded

Security Note:
    Never log plaintext, ciphertext or key values.
    Nonces are random 96-bit values drawn per call; they are never derived
    from a counter or reused from a previous record.
"""
import os
import threading
import hashlib
import logging
from contextlib import contextmanager
from typing import Any, NamedTuple

import orjson
from argon2 import PasswordHasher
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import (
    DEFAULT_MEMORY_COST,
    DEFAULT_PARALLELISM,
    DEFAULT_TIME_COST,
)
from .exceptions import (
    CryptoError,
    DerivationFailed,
    IntegrityViolation,
    VaultLocked,
)
from .memory import SecretBuffer

logger = logging.getLogger("navigator.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM / Poly1305 tag
KEY_LENGTH = 32  # AES-256 / ChaCha20
SALT_LENGTH = 32

RECORDS_CONTEXT = "navigator-vault-records"
NAMES_CONTEXT = "navigator-vault-names"

_CIPHERS: dict[str, type] = {
    "aes256-gcm": AESGCM,
    "chacha20poly1305": ChaCha20Poly1305,
}


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

class KdfParams(NamedTuple):
    """Argon2id cost parameters; persisted next to the salt of each epoch."""

    time_cost: int = DEFAULT_TIME_COST
    memory_cost: int = DEFAULT_MEMORY_COST  # KiB
    parallelism: int = DEFAULT_PARALLELISM

    def validate(self) -> None:
        if self.time_cost < 1:
            raise DerivationFailed("time_cost must be >= 1")
        if self.parallelism < 1:
            raise DerivationFailed("parallelism must be >= 1")
        if self.memory_cost < 8 * self.parallelism:
            raise DerivationFailed("memory_cost must be >= 8 KiB per lane")

    def to_dict(self) -> dict:
        return self._asdict()

    @classmethod
    def from_dict(cls, data: dict) -> "KdfParams":
        try:
            params = cls(
                time_cost=int(data["time_cost"]),
                memory_cost=int(data["memory_cost"]),
                parallelism=int(data["parallelism"]),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise DerivationFailed("malformed kdf parameters") from err
        params.validate()
        return params


def generate_salt() -> bytes:
    """Return a fresh random vault salt."""
    return os.urandom(SALT_LENGTH)


def derive_key(
    password: str,
    salt: bytes,
    params: KdfParams = KdfParams(),
) -> SecretBuffer:
    """Derive the 32-byte master key using Argon2id.

    Args:
        password: Master password.
        salt: Vault salt (exactly ``SALT_LENGTH`` bytes).
        params: Argon2id cost parameters.

    Returns:
        SecretBuffer holding the derived key.

    Raises:
        DerivationFailed: On invalid password, salt or parameters.
    """
    if not isinstance(password, str) or not password:
        raise DerivationFailed("password must be a non-empty string")
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != SALT_LENGTH:
        raise DerivationFailed(f"salt must be exactly {SALT_LENGTH} bytes")
    params.validate()
    try:
        raw = hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=bytes(salt),
            time_cost=params.time_cost,
            memory_cost=params.memory_cost,
            parallelism=params.parallelism,
            hash_len=KEY_LENGTH,
            type=Type.ID,  # Argon2id
        )
    except HashingError as err:
        raise DerivationFailed() from err
    return SecretBuffer(raw)


def derive_subkey(master: SecretBuffer, context: str) -> SecretBuffer:
    """Derive a 32-byte sub-key using HKDF-SHA256.

    Args:
        master: Master key material.
        context: Context string for domain separation (e.g. "navigator-vault-records").

    Returns:
        SecretBuffer holding the derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # master key is already uniformly random
        info=context.encode("utf-8"),
    )
    return SecretBuffer(hkdf.derive(master.view()))


def _password_hasher(params: KdfParams) -> PasswordHasher:
    # Verification hash uses its own salt and a smaller time cost than the
    # master key derivation, so both never share parameters.
    return PasswordHasher(
        time_cost=max(1, params.time_cost - 1),
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=32,
        salt_len=16,
    )


def hash_password(password: str, params: KdfParams = KdfParams()) -> str:
    """Return an Argon2id PHC hash of the master password for verification.

    Raises:
        DerivationFailed: On an empty password or invalid parameters.
    """
    if not isinstance(password, str) or not password:
        raise DerivationFailed("password must be a non-empty string")
    params.validate()
    return _password_hasher(params).hash(password)


def verify_password(password: str, verification_hash: str) -> bool:
    """Check a password against its verification hash in constant time.

    Returns ``False`` both for a wrong password and for a malformed hash,
    so callers cannot distinguish the two.
    """
    if not isinstance(password, str) or not isinstance(verification_hash, str):
        return False
    try:
        # parameters are read from the PHC string itself
        return PasswordHasher().verify(verification_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------

class CryptoManager:
    """AEAD encryption of record payloads.

    The algorithm is a vault-level setting used for every new encryption;
    decryption honours the algorithm tag stored with each record, so vaults
    may mix algorithms across rotations.
    """

    def __init__(self, algorithm: str = "aes256-gcm"):
        self.algorithm = self._resolve(algorithm)

    @staticmethod
    def _resolve(algorithm: str) -> str:
        algorithm = (algorithm or "").lower()
        if algorithm not in _CIPHERS:
            raise CryptoError(f"Unsupported encryption algorithm: {algorithm}")
        return algorithm

    @staticmethod
    def _check_key(key: SecretBuffer) -> memoryview:
        if key.wiped:
            raise CryptoError("encryption key has been wiped")
        if len(key) != KEY_LENGTH:
            raise CryptoError(f"key must be {KEY_LENGTH} bytes")
        return key.view()

    def encrypt(
        self,
        plaintext: bytes,
        key: SecretBuffer,
        associated_data: bytes | None = None,
    ) -> tuple[bytes, bytes]:
        """Encrypt plaintext with a fresh random nonce.

        Args:
            plaintext: Data to encrypt.
            key: 32-byte record key.
            associated_data: Optional data authenticated but not encrypted.

        Returns:
            Tuple of (ciphertext + tag, nonce).
        """
        cipher = _CIPHERS[self.algorithm](self._check_key(key))
        nonce = os.urandom(NONCE_SIZE)
        if len(nonce) != NONCE_SIZE:
            raise CryptoError("nonce generation failed")
        return cipher.encrypt(nonce, plaintext, associated_data), nonce

    def decrypt(
        self,
        ciphertext: bytes,
        nonce: bytes,
        key: SecretBuffer,
        associated_data: bytes | None = None,
        algorithm: str | None = None,
    ) -> bytes:
        """Decrypt and authenticate ciphertext.

        Args:
            ciphertext: Encrypted payload followed by the 16-byte tag.
            nonce: Nonce used at encryption time.
            key: 32-byte record key.
            associated_data: Data bound at encryption time.
            algorithm: Algorithm tag of the record (defaults to this manager's).

        Returns:
            Decrypted plaintext bytes.

        Raises:
            IntegrityViolation: If the tag does not verify, for any reason.
        """
        cipher_cls = _CIPHERS.get((algorithm or self.algorithm).lower())
        if cipher_cls is None:
            raise IntegrityViolation()
        if len(nonce) != NONCE_SIZE or len(ciphertext) < TAG_SIZE:
            raise IntegrityViolation()
        cipher = cipher_cls(self._check_key(key))
        try:
            return cipher.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag:
            raise IntegrityViolation() from None


# ---------------------------------------------------------------------------
# Master key handle
# ---------------------------------------------------------------------------

class MasterKey:
    """In-memory master key of one vault epoch.

    Owns the key material and the two HKDF sub-keys derived from it. Every
    use goes through ``lease()``; any number of leases may be held at once,
    and they fail with ``VaultLocked`` once the key is being wiped.
    ``wipe()`` refuses new leases and waits for running ones to finish, so
    no operation can start or commit with a wiped key. It must not be
    called while the calling thread holds a lease on the same key.
    """

    def __init__(self, material: SecretBuffer, epoch: str):
        self.epoch = epoch
        self._cond = threading.Condition()
        self._leases = 0
        self._closing = False
        self._material = material
        self._records_key = derive_subkey(material, RECORDS_CONTEXT)
        self._names_key = derive_subkey(material, NAMES_CONTEXT)

    @property
    def alive(self) -> bool:
        return not self._closing and not self._material.wiped

    def ensure_alive(self) -> None:
        if not self.alive:
            raise VaultLocked()

    @contextmanager
    def lease(self):
        """Hold the key for the duration of an operation.

        Yields:
            Tuple of (records_key, names_key).
        """
        with self._cond:
            self.ensure_alive()
            self._leases += 1
        try:
            yield self._records_key, self._names_key
        finally:
            with self._cond:
                self._leases -= 1
                if not self._leases:
                    self._cond.notify_all()

    def clone(self) -> "MasterKey":
        """Return an independent copy, wiped separately from this one."""
        with self._cond:
            self.ensure_alive()
            return MasterKey(self._material.copy(), self.epoch)

    def wipe(self) -> None:
        with self._cond:
            self._closing = True
            while self._leases:
                self._cond.wait()
            self._material.wipe()
            self._records_key.wipe()
            self._names_key.wipe()

    def __enter__(self) -> "MasterKey":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"<MasterKey epoch={self.epoch} alive={self.alive}>"


# ---------------------------------------------------------------------------
# Record naming
# ---------------------------------------------------------------------------

def record_name(entry_id: str, names_key: SecretBuffer) -> str:
    """Map an entry id to its on-disk name with a keyed one-way transform.

    Deterministic for a given (entry_id, key) and independent of the
    entry title, so names reveal nothing without the key.
    """
    mac = hmac.HMAC(names_key.view(), hashes.SHA256())
    mac.update(entry_id.encode("utf-8"))
    return mac.finalize().hex()


def token_digest(token: str) -> str:
    """Digest used to index session tokens without keeping them in clear."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Payload serialization
# ---------------------------------------------------------------------------

def serialize_payload(value: Any) -> bytes:
    """Serialize a JSON-compatible value to bytes for encryption."""
    return orjson.dumps(value)


def deserialize_payload(data: bytes) -> Any:
    """Deserialize bytes produced by serialize_payload.

    Raises:
        IntegrityViolation: If an authenticated payload is not valid JSON.
    """
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError:
        raise IntegrityViolation() from None
