"""Navigator Vault — Local password vault with session-gated access.

Security Note (Threat Model):
    Entries are encrypted at rest; the master key exists only in process
    memory while the vault is unlocked and is zeroed when the last holder
    releases it. Python may still keep transient copies of decrypted
    values (strings returned to callers, JSON bodies). A memory dump of
    an unlocked process can therefore expose secrets. This is an accepted
    limitation; mitigation requires an OS keyring or secure enclave, which
    is out of scope.
"""

from .version import __version__
from .config import VaultConfig
from .crypto import CryptoManager, MasterKey, derive_key, hash_password, verify_password
from .exceptions import (
    AuthError,
    CryptoError,
    DerivationFailed,
    IntegrityViolation,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    SessionExpired,
    StorageError,
    ValidationError,
    VaultError,
    VaultLocked,
)
from .models import EntryInput, EntrySummary, EntryUpdate, PasswordEntry
from .storage import EntryStore
from .vault import Vault
from .key_rotation import rotate_master_password
from .session import Session, SessionManager
from .clipboard import ClipboardGuard
from .generator import generate_password

__all__ = [
    "__version__",
    "VaultConfig",
    "CryptoManager",
    "MasterKey",
    "derive_key",
    "hash_password",
    "verify_password",
    "VaultError",
    "AuthError",
    "InvalidCredentials",
    "SessionExpired",
    "InvalidToken",
    "VaultLocked",
    "CryptoError",
    "DerivationFailed",
    "IntegrityViolation",
    "StorageError",
    "NotFound",
    "ValidationError",
    "EntryInput",
    "EntryUpdate",
    "EntrySummary",
    "PasswordEntry",
    "EntryStore",
    "Vault",
    "rotate_master_password",
    "Session",
    "SessionManager",
    "ClipboardGuard",
    "generate_password",
]
