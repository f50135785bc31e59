"""
Vault — explicit context object for one vault directory.

Owns the on-disk layout and the lifecycle of master keys:
- ``initialize(password)`` — create the first key epoch
- ``verify(password)`` / ``unlock(password)`` — authenticate, derive a MasterKey
- ``unlocked(password)`` — scoped unlock that wipes the key on exit
- ``lock()`` — wipe every key handed out by this vault
- ``store`` — the EntryStore of the active epoch

Layout::

    <database_path>/
        .lock                   advisory lock shared by every process
        CURRENT                 name of the active epoch
        epoch-<hex>/
            salt                32 random bytes
            kdf.json            Argon2id cost parameters
            verifier            Argon2id PHC hash of the master password
            check               encrypted key-check record
            records/<name>.rec  one EncryptedRecord per entry

There is no module-level vault; several ``Vault`` instances (tests,
profiles) can coexist in one process.

Security Note:
    Never log the master password, salts or keys. Only log epoch names.
"""
import logging
import secrets
import shutil
import threading
import weakref
from contextlib import contextmanager, nullcontext, suppress
from pathlib import Path
from typing import Optional

import orjson

from .config import VaultConfig
from .crypto import (
    SALT_LENGTH,
    KdfParams,
    MasterKey,
    derive_key,
    generate_salt,
    hash_password,
    verify_password,
)
from .exceptions import (
    DerivationFailed,
    InvalidCredentials,
    StorageError,
    ValidationError,
    VaultLocked,
)
from .storage import (
    EntryStore,
    FileLock,
    ReadWriteLock,
    atomic_write,
    fsync_dir,
    read_pointer,
    shred,
    sweep_temp_files,
)

logger = logging.getLogger("navigator.vault")

CURRENT_FILE = "CURRENT"
LOCK_FILE = ".lock"
EPOCH_PREFIX = "epoch-"
SALT_FILE = "salt"
KDF_FILE = "kdf.json"
VERIFIER_FILE = "verifier"
RECORDS_DIR = "records"

MIN_PASSWORD_LENGTH = 8


def check_password_strength(password: str) -> None:
    """Reject master passwords that are obviously too weak.

    Raises:
        ValidationError: If the password is not a string of sufficient length.
    """
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"master password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


class Epoch:
    """Files of one key epoch (a salt and every record encrypted under it)."""

    def __init__(self, root: Path, name: str):
        self.name = name
        self.path = root / name

    @property
    def records_dir(self) -> Path:
        return self.path / RECORDS_DIR

    def _read(self, filename: str) -> bytes:
        try:
            return (self.path / filename).read_bytes()
        except OSError as err:
            raise StorageError(f"failed to read {filename}") from err

    def salt(self) -> bytes:
        salt = self._read(SALT_FILE)
        if len(salt) != SALT_LENGTH:
            raise DerivationFailed("stored salt has the wrong length")
        return salt

    def kdf_params(self) -> KdfParams:
        try:
            data = orjson.loads(self._read(KDF_FILE))
        except orjson.JSONDecodeError as err:
            raise DerivationFailed("malformed kdf parameters") from err
        return KdfParams.from_dict(data)

    def verifier(self) -> str:
        return self._read(VERIFIER_FILE).decode("ascii", errors="replace")

    def write(self, salt: bytes, params: KdfParams, verifier: str) -> None:
        try:
            self.records_dir.mkdir(parents=True, exist_ok=False)
        except OSError as err:
            raise StorageError(f"failed to create epoch {self.name}") from err
        atomic_write(self.path / SALT_FILE, salt)
        atomic_write(self.path / KDF_FILE, orjson.dumps(params.to_dict()))
        atomic_write(self.path / VERIFIER_FILE, verifier.encode("ascii"))
        fsync_dir(self.path.parent)

    def remove(self) -> None:
        """Shred every file of the epoch, then drop the directory (best effort)."""
        if not self.path.exists():
            return
        for item in sorted(self.path.rglob("*"), reverse=True):
            if item.is_file():
                with suppress(OSError):
                    shred(item)
        shutil.rmtree(self.path, ignore_errors=True)

    def __repr__(self) -> str:
        return f"<Epoch {self.name}>"


class Vault:
    """A vault directory and the master keys unlocked from it.

    ``rwlock`` orders operations inside this process; ``file_lock`` orders
    them across processes sharing the directory (a server and a CLI
    rotation, say). Both are taken in that order.
    """

    def __init__(self, path: Optional[Path] = None, config: Optional[VaultConfig] = None):
        self.config = config or VaultConfig()
        self.path = Path(path or self.config.database_path)
        self.rwlock = ReadWriteLock()
        self.file_lock = FileLock(self.path / LOCK_FILE)
        self._keys: "weakref.WeakSet[MasterKey]" = weakref.WeakSet()
        self._keys_lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._epoch: Optional[Epoch] = None
        self._store: Optional[EntryStore] = None
        self._dummy_verifier: Optional[str] = None
        self._open()

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def _open(self) -> None:
        """Load the active epoch and clean up interrupted writes/rotations."""
        if not self.path.is_dir():
            return
        with self.file_lock.exclusive():
            name = self.refresh()
            if name:
                sweep_temp_files(self.epoch.records_dir)
            sweep_temp_files(self.path)
            for stale in self.path.glob(f"{EPOCH_PREFIX}*"):
                if stale.is_dir() and stale.name != name:
                    logger.info("Removing stale vault epoch %s", stale.name)
                    Epoch(self.path, stale.name).remove()

    def _shared(self):
        if not self.path.is_dir():
            return nullcontext()
        return self.file_lock.shared()

    def refresh(self) -> Optional[str]:
        """Follow the ``CURRENT`` pointer if another process moved it.

        Keys of a replaced epoch are wiped. Callers hold ``file_lock``.

        Returns:
            Name of the active epoch, or None for an uninitialized vault.
        """
        name = read_pointer(self.path / CURRENT_FILE)
        with self._sync_lock:
            current = self._epoch.name if self._epoch else None
            if name == current:
                return name
            if name is None:
                raise StorageError("vault pointer is missing")
            epoch = Epoch(self.path, name)
            if not epoch.path.is_dir():
                raise StorageError(f"active epoch {name} is missing")
            self._activate(epoch)
        if current is not None:
            logger.info("Vault epoch %s was replaced by %s on disk", current, name)
            self.lock_keys()
        return name

    def _activate(self, epoch: Epoch) -> None:
        self._epoch = epoch
        self._store = EntryStore(
            epoch.records_dir,
            epoch.name,
            algorithm=self.config.encryption_algorithm,
            lock=self.rwlock,
            file_lock=self.file_lock,
            pointer=self.path / CURRENT_FILE,
        )

    @property
    def is_initialized(self) -> bool:
        return self._epoch is not None

    @property
    def epoch(self) -> Epoch:
        if self._epoch is None:
            raise StorageError("vault is not initialized")
        return self._epoch

    @property
    def store(self) -> EntryStore:
        if self._store is None:
            raise StorageError("vault is not initialized")
        return self._store

    def kdf_params(self) -> KdfParams:
        """Cost parameters for new epochs, taken from the configuration."""
        return KdfParams(
            time_cost=self.config.kdf_time_cost,
            memory_cost=self.config.kdf_memory_cost,
            parallelism=self.config.kdf_parallelism,
        )

    def create_epoch(self, password: str) -> tuple[Epoch, MasterKey]:
        """Write a new, not yet active, epoch for ``password``.

        Returns:
            The epoch and its (untracked) master key; the caller owns the key.
        """
        params = self.kdf_params()
        salt = generate_salt()
        epoch = Epoch(self.path, f"{EPOCH_PREFIX}{secrets.token_hex(8)}")
        try:
            epoch.write(salt, params, hash_password(password, params))
            key = MasterKey(derive_key(password, salt, params), epoch.name)
            try:
                EntryStore(
                    epoch.records_dir, epoch.name,
                    algorithm=self.config.encryption_algorithm,
                ).write_check(key)
            except BaseException:
                key.wipe()
                raise
        except BaseException:
            epoch.remove()
            raise
        return epoch, key

    def commit_epoch(self, epoch: Epoch) -> None:
        """Atomically make ``epoch`` the active one."""
        atomic_write(self.path / CURRENT_FILE, epoch.name.encode("ascii"))
        self._activate(epoch)
        logger.info("Vault epoch %s is now active", epoch.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, password: str) -> None:
        """Create a new vault protected by ``password``.

        Raises:
            ValidationError: If the password is too weak.
            StorageError: If the vault already exists or cannot be written.
        """
        check_password_strength(password)
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise StorageError("failed to create vault directory") from err
        with self.rwlock.write_locked(), self.file_lock.exclusive():
            self.refresh()
            if self.is_initialized:
                raise StorageError("vault already initialized")
            epoch, key = self.create_epoch(password)
            key.wipe()
            self.commit_epoch(epoch)
        logger.info("Vault initialized at %s", self.path)

    def verify(self, password: str) -> bool:
        """Check the master password without deriving the encryption key.

        An uninitialized vault costs the same as a wrong password.
        """
        with self._shared():
            self.refresh()
            return self.check_password(password)

    def check_password(self, password: str) -> bool:
        """``verify`` for callers that already hold ``file_lock``."""
        if self._epoch is None:
            verify_password(password, self._dummy())
            return False
        try:
            verifier = self._epoch.verifier()
        except StorageError:
            verify_password(password, self._dummy())
            raise
        return verify_password(password, verifier)

    def _dummy(self) -> str:
        if self._dummy_verifier is None:
            self._dummy_verifier = hash_password(
                secrets.token_urlsafe(16), self.kdf_params(),
            )
        return self._dummy_verifier

    def unlock(self, password: str, reuse: Optional[MasterKey] = None) -> MasterKey:
        """Authenticate and return a tracked MasterKey for the active epoch.

        Args:
            password: Master password.
            reuse: A live key of the active epoch to clone instead of
                running the key derivation again.

        Raises:
            InvalidCredentials: Wrong password or uninitialized vault.
        """
        with self.rwlock.read_locked(), self._shared():
            self.refresh()
            if not self.check_password(password):
                logger.warning("Vault unlock rejected: invalid credentials")
                raise InvalidCredentials()
            epoch = self.epoch
            key = None
            if reuse is not None and reuse.epoch == epoch.name:
                try:
                    key = reuse.clone()
                except VaultLocked:
                    # wiped since the caller handed it over
                    key = None
            if key is None:
                key = MasterKey(
                    derive_key(password, epoch.salt(), epoch.kdf_params()),
                    epoch.name,
                )
            self.track(key)
        logger.info("Vault unlocked: epoch=%s", epoch.name)
        return key

    @contextmanager
    def unlocked(self, password: str):
        """Scoped unlock; the key is wiped when the block exits."""
        key = self.unlock(password)
        try:
            yield key
        finally:
            key.wipe()

    def track(self, key: MasterKey) -> None:
        with self._keys_lock:
            self._keys.add(key)

    def lock_keys(self) -> int:
        """Wipe every key handed out by this vault; return how many were live."""
        with self._keys_lock:
            keys = list(self._keys)
            self._keys = weakref.WeakSet()
        live = 0
        for key in keys:
            if key.alive:
                live += 1
            key.wipe()
        return live

    def lock(self) -> None:
        """Lock the vault: every outstanding MasterKey is wiped."""
        wiped = self.lock_keys()
        logger.info("Vault locked (%d key(s) wiped)", wiped)

    def rotate_master_password(self, current_password: str, new_password: str) -> dict:
        """Re-encrypt the whole vault under a new master password.

        See ``navigator_vault.key_rotation.rotate_master_password``.
        """
        from .key_rotation import rotate_master_password
        return rotate_master_password(self, current_password, new_password)

    def __repr__(self) -> str:
        epoch = self._epoch.name if self._epoch else None
        return f"<Vault path={self.path} epoch={epoch}>"
