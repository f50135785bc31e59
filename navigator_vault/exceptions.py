"""
Vault Exceptions — error taxonomy shared by the crypto, storage and session layers.

Security Note:
    Messages never carry plaintext, ciphertext, tokens or key material.
    Wrong-key and tampered-record failures share one message so callers
    cannot tell them apart.
"""


class VaultError(Exception):
    """Base class for every error raised by navigator_vault."""

    message: str = "vault error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthError(VaultError):
    """Authentication or session failure. Retryable by re-authenticating."""

    message = "authentication failed"


class InvalidCredentials(AuthError):
    message = "invalid credentials"


class SessionExpired(AuthError):
    message = "session expired"


class InvalidToken(AuthError):
    message = "invalid token"


class VaultLocked(AuthError):
    """The key held by the caller was wiped (vault locked, session revoked or rotated)."""

    message = "vault is locked"


# ---------------------------------------------------------------------------
# Cryptography
# ---------------------------------------------------------------------------

class CryptoError(VaultError):
    message = "cryptographic operation failed"


class DerivationFailed(CryptoError):
    message = "key derivation failed"


class IntegrityViolation(CryptoError):
    """Authentication tag did not verify: wrong key or tampered record."""

    message = "record failed integrity verification"


# ---------------------------------------------------------------------------
# Storage / validation
# ---------------------------------------------------------------------------

class StorageError(VaultError):
    message = "storage operation failed"


class NotFound(StorageError):
    message = "entry not found"


class ValidationError(VaultError):
    """Malformed entry fields, rejected before any encryption attempt."""

    message = "invalid entry"

    def __init__(self, message: str | None = None, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []
