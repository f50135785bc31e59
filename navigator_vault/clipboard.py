"""
Clipboard Guard — decrypted secrets in the system clipboard, cleared on a timer.

Only the most recent copy governs: every ``copy_with_timeout`` bumps a
generation counter and cancels the pending timer, and a timer that already
fired for an older generation does nothing. On expiry the clipboard is
overwritten with an empty string.

The guard never touches the entry store or its lock.

Security Note:
    Never log clipboard content. The guard does not keep the secret after
    copying it; it only remembers that the clipboard is dirty.
"""
import logging
import threading
from typing import Callable, Optional

import pyperclip

from .config import VaultConfig

logger = logging.getLogger("navigator.vault")

DEFAULT_CLEAR_TIMEOUT = 30  # seconds


class ClipboardGuard:
    """Copies secrets to the clipboard and guarantees their clearance.

    Args:
        timeout: Default seconds before the clipboard is cleared.
        copy_fn: Clipboard writer (``pyperclip.copy`` by default).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_CLEAR_TIMEOUT,
        copy_fn: Optional[Callable[[str], None]] = None,
    ):
        if timeout <= 0:
            raise ValueError("clipboard timeout must be positive")
        self.timeout = timeout
        self._copy = copy_fn or pyperclip.copy
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._dirty = False

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        copy_fn: Optional[Callable[[str], None]] = None,
    ) -> "ClipboardGuard":
        """Build a guard that clears after ``config.clipboard_timeout`` seconds."""
        return cls(timeout=config.clipboard_timeout, copy_fn=copy_fn)

    @property
    def pending(self) -> bool:
        """True while a secret is in the clipboard awaiting clearance."""
        with self._lock:
            return self._dirty

    def copy_with_timeout(self, secret: str, timeout: Optional[float] = None) -> int:
        """Place ``secret`` in the clipboard and schedule its clearance.

        A pending clearance for an earlier secret is cancelled.

        Returns:
            The generation number of this copy.
        """
        timeout = self.timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError("clipboard timeout must be positive")
        with self._lock:
            self._cancel()
            self._generation += 1
            generation = self._generation
            self._copy(secret)
            self._dirty = True
            timer = threading.Timer(timeout, self._expire, args=(generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()
        logger.debug("Secret copied to clipboard, clearing in %ss", timeout)
        return generation

    def _expire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                # superseded by a newer copy
                return
            self._timer = None
            self._wipe()
        logger.info("Clipboard cleared after timeout")

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _wipe(self) -> None:
        self._copy("")
        self._dirty = False

    def clear(self) -> None:
        """Cancel any pending timer and overwrite the clipboard now."""
        with self._lock:
            self._cancel()
            self._generation += 1
            self._wipe()
        logger.debug("Clipboard cleared")

    def close(self) -> None:
        """Clear the clipboard if a secret is still pending."""
        with self._lock:
            self._cancel()
            self._generation += 1
            if self._dirty:
                self._wipe()

    def __enter__(self) -> "ClipboardGuard":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
