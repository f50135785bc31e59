"""
Vault Key Rotation — Re-encryption of every entry under a new master password.

Builds a complete new epoch (salt, verifier, key check and every record
re-encrypted under the new key) next to the active one, then commits it by
atomically replacing the ``CURRENT`` pointer. The operation holds the vault
locks exclusively for its whole duration, in this process and on disk, so
no entry is ever readable or writable under a stale key while others use
the new one. A failure before the commit discards the partial epoch and
leaves the vault untouched.

Security Note:
    Plaintext exists in memory only during re-encryption of each entry.
    Never log plaintext or ciphertext values.
"""
import logging

from .crypto import MasterKey, derive_key
from .exceptions import InvalidCredentials, StorageError
from .storage import EntryStore
from .vault import Vault, check_password_strength

logger = logging.getLogger("navigator.vault")


def rotate_master_password(
    vault: Vault,
    current_password: str,
    new_password: str,
) -> dict:
    """Re-encrypt all entries from the active epoch into a new one.

    Args:
        vault: Vault to rotate.
        current_password: Master password of the active epoch.
        new_password: New master password.

    Returns:
        Stats dict with keys: total, rotated.

    Raises:
        ValidationError: If the new password is too weak.
        InvalidCredentials: If ``current_password`` is wrong.
        IntegrityViolation: If any record fails authentication; the vault
            is left exactly as it was.
    """
    check_password_strength(new_password)
    stats = {"total": 0, "rotated": 0}

    with vault.rwlock.write_locked(), vault.file_lock.exclusive():
        vault.refresh()
        if not vault.is_initialized:
            raise StorageError("vault is not initialized")
        if not vault.check_password(current_password):
            logger.warning("Key rotation rejected: invalid credentials")
            raise InvalidCredentials()

        old_epoch = vault.epoch
        old_store = vault.store
        logger.info("Starting key rotation from %s", old_epoch.name)

        old_key = MasterKey(
            derive_key(current_password, old_epoch.salt(), old_epoch.kdf_params()),
            old_epoch.name,
        )
        new_epoch = None
        try:
            new_epoch, new_key = vault.create_epoch(new_password)
            new_store = EntryStore(
                new_epoch.records_dir,
                new_epoch.name,
                algorithm=vault.config.encryption_algorithm,
            )
            with new_key, old_key.lease() as (old_rk, _), new_key.lease() as (new_rk, new_nk):
                for name in old_store.record_names():
                    stats["total"] += 1
                    entry = old_store.load_entry(name, old_rk)
                    new_store.write_entry(entry, new_rk, new_nk)
                    stats["rotated"] += 1
            vault.commit_epoch(new_epoch)
        except BaseException:
            if new_epoch is not None and vault.epoch is not new_epoch:
                logger.error(
                    "Key rotation aborted after %d of %d entries; discarding %s",
                    stats["rotated"], stats["total"], new_epoch.name,
                )
                new_epoch.remove()
            raise
        finally:
            old_key.wipe()

        # every key of the old epoch (sessions, TUI) dies with it
        wiped = vault.lock_keys()
        old_epoch.remove()

    logger.info(
        "Key rotation complete: %s (%d key(s) invalidated)", stats, wiped,
    )
    return stats
