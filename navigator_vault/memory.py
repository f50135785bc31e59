"""
Secret Memory — owned byte buffers with explicit zeroization.

Security Note:
    CPython gives no hard guarantee that no other copy of a secret exists
    (immutable ``bytes`` returned by third-party libraries cannot be
    cleared). ``SecretBuffer`` keeps the long-lived copy in a mutable
    ``bytearray`` that is overwritten in place when the owner releases it.
"""
import ctypes
import threading


class SecretBuffer:
    """Mutable secret bytes that are zeroed on ``wipe()`` or scope exit.

    Usage::

        with SecretBuffer(material) as buf:
            cipher = AESGCM(buf.view())
    """

    __slots__ = ("_data", "_wiped", "_lock", "__weakref__")

    def __init__(self, data: bytes | bytearray):
        self._data = bytearray(data)
        self._wiped = False
        self._lock = threading.Lock()
        if isinstance(data, bytearray):
            _zero(data)

    def view(self) -> memoryview:
        """Return a read-only view over the secret without copying it."""
        if self._wiped:
            raise ValueError("SecretBuffer already wiped")
        return memoryview(self._data).toreadonly()

    def copy(self) -> "SecretBuffer":
        """Return an independent buffer holding the same secret."""
        if self._wiped:
            raise ValueError("SecretBuffer already wiped")
        clone = SecretBuffer(b"")
        # constructor would zero a bytearray argument
        clone._data = bytearray(self._data)
        return clone

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Overwrite the secret with zeros. Idempotent."""
        with self._lock:
            if self._wiped:
                return
            _zero(self._data)
            self._wiped = True

    def __len__(self) -> int:
        return len(self._data)

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __del__(self):
        try:
            self.wipe()
        except AttributeError:
            # partially constructed
            pass

    def __repr__(self) -> str:
        return f"<SecretBuffer len={len(self._data)} wiped={self._wiped}>"

    def __reduce__(self):
        raise TypeError("SecretBuffer cannot be pickled")


def _zero(buf: bytearray) -> None:
    """Zero a bytearray in place."""
    size = len(buf)
    if not size:
        return
    ctypes.memset((ctypes.c_char * size).from_buffer(buf), 0, size)
