"""
Entry Store — one encrypted file per password entry.

Provides CRUD over ``<records_dir>/<name>.rec`` files:
- ``create(entry, key)`` — encrypt and write a new record, return its id
- ``read(entry_id, key)`` — resolve the obfuscated name and decrypt
- ``update(entry_id, changes, key)`` — re-encrypt with a fresh nonce
- ``delete(entry_id, key)`` — overwrite then unlink
- ``list(key)`` / ``search(key, query)`` — decrypt every record into summaries

Records are written to a temp file in the same directory, fsynced, then
renamed over the final name, so a crash never leaves a partial record
visible. There is no separate index: listing decrypts each record, so the
listing can never diverge from the record set.

Security Note:
    Never log plaintext or ciphertext values. Only log entry ids and counts.
"""
from __future__ import annotations

import os
import logging
import tempfile
import threading
from contextlib import contextmanager, nullcontext, suppress
from pathlib import Path
from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .crypto import (
    TAG_SIZE,
    CryptoManager,
    MasterKey,
    deserialize_payload,
    record_name,
    serialize_payload,
)
from .exceptions import (
    IntegrityViolation,
    NotFound,
    StorageError,
    ValidationError,
    VaultError,
    VaultLocked,
)
from .models import (
    RECORD_VERSION,
    SORTABLE_FIELDS,
    EncryptedRecord,
    EntryInput,
    EntrySummary,
    EntryUpdate,
    PasswordEntry,
    new_entry_id,
    parse_model,
    record_aad,
    utcnow,
)

logger = logging.getLogger("navigator.vault")

RECORD_SUFFIX = ".rec"
TEMP_SUFFIX = ".tmp"
CHECK_FILE = "check"
CHECK_NAME = "key-check"
CHECK_PLAINTEXT = b"NAVIGATOR_VAULT_OK"


class ReadWriteLock:
    """Writer-preferring readers/writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Waiting writers block new readers so a rotation cannot starve.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class FileLock:
    """Advisory lock on a file shared by every process using the vault.

    Store operations hold it shared; initialization, rotation and the
    stale-epoch sweep hold it exclusively, so one process can never
    remove or replace an epoch another process is still working in.
    Every hold opens its own descriptor, which makes threads of one
    process contend like separate processes. Outside POSIX only the
    in-process lock applies.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @contextmanager
    def _hold(self, exclusive: bool):
        if os.name != "posix":
            yield
            return
        import fcntl
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as err:
            raise StorageError("failed to open vault lock file") from err
        try:
            fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            yield
        finally:
            # closing the descriptor releases the lock
            os.close(fd)

    def shared(self):
        return self._hold(exclusive=False)

    def exclusive(self):
        return self._hold(exclusive=True)


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def fsync_dir(path: Path) -> None:
    """Flush a directory entry (rename/unlink) to disk where supported."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via temp file + fsync + rename.

    Raises:
        StorageError: On any I/O failure; the final path is left untouched.
    """
    directory = path.parent
    tmp = None
    try:
        fd, tmp = tempfile.mkstemp(
            dir=directory, prefix=f".{path.name}.", suffix=TEMP_SUFFIX,
        )
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
        tmp = None
        fsync_dir(directory)
    except OSError as err:
        raise StorageError(f"failed to write {path.name}") from err
    finally:
        if tmp is not None:
            with suppress(FileNotFoundError):
                os.unlink(tmp)


def shred(path: Path) -> None:
    """Overwrite a file with random bytes, then unlink it.

    The overwrite is best effort (journaling and copy-on-write filesystems
    may keep old blocks); the unlink is not.
    """
    try:
        size = path.stat().st_size
        with open(path, "r+b") as fh:
            fh.write(os.urandom(size))
            fh.flush()
            os.fsync(fh.fileno())
    except FileNotFoundError:
        raise
    except OSError as err:
        logger.warning("Could not overwrite %s before removal: %s", path.name, err)
    try:
        os.unlink(path)
        fsync_dir(path.parent)
    except FileNotFoundError:
        raise
    except OSError as err:
        raise StorageError(f"failed to remove {path.name}") from err


def read_pointer(path: Path) -> Optional[str]:
    """Return the epoch name stored in a pointer file, or None if there is none."""
    try:
        return path.read_text("ascii").strip() or None
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as err:
        raise StorageError("failed to read vault pointer") from err


def sweep_temp_files(directory: Path) -> int:
    """Remove temp files left behind by an interrupted write."""
    removed = 0
    for tmp in directory.glob(f".*{TEMP_SUFFIX}"):
        with suppress(FileNotFoundError):
            tmp.unlink()
            removed += 1
    if removed:
        logger.info("Removed %d interrupted write(s) from %s", removed, directory)
    return removed


# ---------------------------------------------------------------------------
# Fuzzy matching (search)
# ---------------------------------------------------------------------------

def fuzzy_score(text: str, query: str) -> int:
    """Score ``query`` as an in-order subsequence of ``text``; 0 means no match.

    Consecutive matches and matches at word starts score higher.
    """
    text, query = text.casefold(), query.casefold()
    if not query:
        return 1
    score = 0
    streak = 0
    pos = 0
    for ch in query:
        idx = text.find(ch, pos)
        if idx < 0:
            return 0
        streak = streak + 1 if idx == pos else 1
        score += 1 + 2 * (streak - 1)
        if idx == 0 or not text[idx - 1].isalnum():
            score += 3
        pos = idx + 1
    if query in text:
        score += 2 * len(query)
    return score


def _sort_value(value: Any) -> tuple:
    if value is None:
        return (1, "")
    if isinstance(value, str):
        return (0, value.casefold())
    return (0, value)


# ---------------------------------------------------------------------------
# Entry store
# ---------------------------------------------------------------------------

class EntryStore:
    """Encrypted entries of one vault epoch.

    All operations take a ``MasterKey`` explicitly; the store never keeps
    one. ``lock`` is the vault-wide readers/writer lock: ordinary operations
    hold it shared (rotation holds it exclusively), and mutations are
    additionally serialized on the store's own writer mutex. ``file_lock``
    is held shared for the same span, and ``pointer`` is checked under it:
    once another process has moved the vault to a new epoch, every
    operation fails with ``VaultLocked``.
    """

    def __init__(
        self,
        records_dir: Path,
        epoch: str,
        algorithm: str = "aes256-gcm",
        lock: ReadWriteLock | None = None,
        check_path: Path | None = None,
        file_lock: FileLock | None = None,
        pointer: Path | None = None,
    ):
        self.records_dir = Path(records_dir)
        self.check_path = Path(check_path or self.records_dir.parent / CHECK_FILE)
        self.epoch = epoch
        self._crypto = CryptoManager(algorithm)
        self._lock = lock or ReadWriteLock()
        self._write_mutex = threading.Lock()
        self._file_lock = file_lock
        self._pointer = pointer

    @property
    def algorithm(self) -> str:
        return self._crypto.algorithm

    def path(self, name: str) -> Path:
        return self.records_dir / f"{name}{RECORD_SUFFIX}"

    def _shared(self):
        return self._file_lock.shared() if self._file_lock else nullcontext()

    def _check_epoch(self, key: MasterKey) -> None:
        if key.epoch != self.epoch:
            raise VaultLocked()
        if self._pointer is not None and read_pointer(self._pointer) != self.epoch:
            logger.info("Vault epoch %s was replaced on disk", self.epoch)
            raise VaultLocked()

    # ------------------------------------------------------------------
    # Record sealing
    # ------------------------------------------------------------------

    def seal(self, name: str, payload: bytes, records_key) -> bytes:
        """Encrypt a payload into a serialized EncryptedRecord named ``name``."""
        aad = record_aad(name, self._crypto.algorithm)
        sealed, nonce = self._crypto.encrypt(payload, records_key, aad)
        record = EncryptedRecord.seal(
            name, self._crypto.algorithm, nonce, sealed, TAG_SIZE,
        )
        return orjson.dumps(record.model_dump())

    def unseal(self, name: str, data: bytes, records_key) -> bytes:
        """Authenticate and decrypt a serialized record stored under ``name``.

        Raises:
            IntegrityViolation: Wrong key, tampering, or a record moved
                under another name.
        """
        try:
            record = EncryptedRecord.model_validate(orjson.loads(data))
        except (orjson.JSONDecodeError, PydanticValidationError):
            raise IntegrityViolation() from None
        if record.version != RECORD_VERSION or record.name != name:
            raise IntegrityViolation()
        body, nonce = record.sealed()
        return self._crypto.decrypt(
            body, nonce, records_key,
            associated_data=record.associated_data(),
            algorithm=record.algorithm,
        )

    def write_entry(self, entry: PasswordEntry, records_key, names_key) -> str:
        """Seal ``entry`` and atomically write it under its obfuscated name."""
        name = record_name(entry.id, names_key)
        payload = serialize_payload(entry.model_dump(mode="json"))
        atomic_write(self.path(name), self.seal(name, payload, records_key))
        return name

    def load_entry(self, name: str, records_key) -> PasswordEntry:
        """Read and decrypt the record stored under ``name``.

        Raises:
            NotFound: If the record file does not exist.
            IntegrityViolation: If it does not authenticate.
        """
        path = self.path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFound() from None
        except OSError as err:
            raise StorageError(f"failed to read {path.name}") from err
        plaintext = self.unseal(name, data, records_key)
        try:
            return PasswordEntry.model_validate(deserialize_payload(plaintext))
        except PydanticValidationError:
            raise IntegrityViolation() from None

    def record_names(self) -> list[str]:
        try:
            return sorted(
                p.name[:-len(RECORD_SUFFIX)]
                for p in self.records_dir.iterdir()
                if p.name.endswith(RECORD_SUFFIX) and not p.name.startswith(".")
            )
        except FileNotFoundError:
            return []
        except OSError as err:
            raise StorageError("failed to list records") from err

    # ------------------------------------------------------------------
    # Key check
    # ------------------------------------------------------------------

    def write_check(self, key: MasterKey) -> None:
        """Store a known plaintext under the key, used to tell a wrong key from a missing entry."""
        with key.lease() as (rk, _):
            data = self.seal(CHECK_NAME, CHECK_PLAINTEXT, rk)
        atomic_write(self.check_path, data)

    def _missing(self, records_key) -> VaultError:
        """Error for an absent record: NotFound, unless the key itself is wrong."""
        try:
            data = self.check_path.read_bytes()
        except FileNotFoundError:
            return NotFound()
        except OSError as err:
            raise StorageError("failed to read key check") from err
        try:
            if self.unseal(CHECK_NAME, data, records_key) != CHECK_PLAINTEXT:
                return IntegrityViolation()
        except IntegrityViolation as err:
            return err
        return NotFound()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, entry: Union[EntryInput, dict], key: MasterKey) -> str:
        """Encrypt and persist a new entry.

        Args:
            entry: Entry fields (validated before anything is encrypted).
            key: Master key of this vault epoch.

        Returns:
            The new entry id.

        Raises:
            ValidationError: If the fields are malformed.
            VaultLocked: If the key was wiped or belongs to another epoch.
        """
        if not isinstance(entry, EntryInput):
            entry = parse_model(EntryInput, entry)
        with self._lock.read_locked(), self._write_mutex, self._shared(), key.lease() as (rk, nk):
            self._check_epoch(key)
            now = utcnow()
            entry_id = new_entry_id()
            while self.path(record_name(entry_id, nk)).exists():
                entry_id = new_entry_id()
            full = PasswordEntry(
                id=entry_id, created_at=now, updated_at=now, **entry.model_dump(),
            )
            self.write_entry(full, rk, nk)
        logger.debug("Vault entry created: id=%s", entry_id)
        return entry_id

    def read(self, entry_id: str, key: MasterKey) -> PasswordEntry:
        """Decrypt and return an entry.

        Raises:
            NotFound: If no record exists for ``entry_id``.
            IntegrityViolation: Wrong key or tampered record.
        """
        with self._lock.read_locked(), self._shared(), key.lease() as (rk, nk):
            self._check_epoch(key)
            try:
                entry = self.load_entry(record_name(entry_id, nk), rk)
            except NotFound:
                raise self._missing(rk) from None
        if entry.id != entry_id:
            raise IntegrityViolation()
        return entry

    def exists(self, entry_id: str, key: MasterKey) -> bool:
        with self._lock.read_locked(), self._shared(), key.lease() as (_, nk):
            self._check_epoch(key)
            return self.path(record_name(entry_id, nk)).exists()

    def update(
        self,
        entry_id: str,
        changes: Union[EntryUpdate, EntryInput, dict],
        key: MasterKey,
    ) -> PasswordEntry:
        """Apply changes to an entry and re-encrypt it with a fresh nonce.

        ``updated_at`` is refreshed; ``created_at`` and ``id`` never change.

        Returns:
            The updated entry.
        """
        if isinstance(changes, dict):
            changes = parse_model(EntryUpdate, changes)
        elif not isinstance(changes, BaseModel):
            raise ValidationError("changes must be a mapping")
        fields = changes.model_dump(exclude_unset=True)
        with self._lock.read_locked(), self._write_mutex, self._shared(), key.lease() as (rk, nk):
            self._check_epoch(key)
            try:
                current = self.load_entry(record_name(entry_id, nk), rk)
            except NotFound:
                raise self._missing(rk) from None
            if current.id != entry_id:
                raise IntegrityViolation()
            updated = current.model_copy(
                update={**fields, "updated_at": max(utcnow(), current.updated_at)},
            )
            self.write_entry(updated, rk, nk)
        logger.debug("Vault entry updated: id=%s", entry_id)
        return updated

    def delete(self, entry_id: str, key: MasterKey) -> None:
        """Overwrite and remove an entry's record.

        Raises:
            NotFound: If no record exists for ``entry_id``.
        """
        with self._lock.read_locked(), self._write_mutex, self._shared(), key.lease() as (rk, nk):
            self._check_epoch(key)
            try:
                shred(self.path(record_name(entry_id, nk)))
            except FileNotFoundError:
                raise self._missing(rk) from None
        logger.debug("Vault entry deleted: id=%s", entry_id)

    def entries(self, key: MasterKey) -> list[PasswordEntry]:
        """Decrypt every record of the epoch (unordered).

        Raises:
            IntegrityViolation: If any record fails authentication. Such a
                record is reported, never skipped or removed.
        """
        result: list[PasswordEntry] = []
        with self._lock.read_locked(), self._shared(), key.lease() as (rk, _):
            self._check_epoch(key)
            for name in self.record_names():
                try:
                    result.append(self.load_entry(name, rk))
                except NotFound:
                    # removed by a concurrent delete
                    continue
                except IntegrityViolation:
                    logger.warning("Vault record failed integrity check: %s", name)
                    raise
        return result

    def search(self, key: MasterKey, query: str) -> list[EntrySummary]:
        """Fuzzy-filter summaries on title, username, url and tags.

        Best matches first; an empty query returns the full title-ordered list.
        """
        query = (query or "").strip()
        if not query:
            return self.list(key)
        scored: list[tuple[int, str, EntrySummary]] = []
        for summary in (e.summary() for e in self.entries(key)):
            haystacks = [summary.title, summary.username or "", summary.url or "", *summary.tags]
            score = max(fuzzy_score(h, query) for h in haystacks)
            if score:
                scored.append((score, summary.title.casefold(), summary))
        scored.sort(key=lambda item: (-item[0], item[1], item[2].id))
        return [s for _, _, s in scored]

    def count(self, key: MasterKey) -> int:
        with self._lock.read_locked(), self._shared():
            key.ensure_alive()
            self._check_epoch(key)
            return len(self.record_names())

    def list(self, key: MasterKey, sort_by: str = "title") -> list[EntrySummary]:
        """Return summaries ordered by ``sort_by`` (case-insensitive), ties by id."""
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"cannot sort by {sort_by!r}")
        summaries = [e.summary() for e in self.entries(key)]
        summaries.sort(key=lambda s: (_sort_value(getattr(s, sort_by)), s.id))
        return summaries
