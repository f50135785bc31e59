"""
Session Manager — short-lived bearer tokens in front of the entry store.

State machine::

    Locked --authenticate(password)--> Unlocked(MasterKey) --issue--> Authenticated(token)
    Authenticated --[ttl elapsed | revoke | lock_all | rotation]--> Locked

Each session owns its own clone of the vault's master key, so revoking one
token wipes exactly that copy; ``lock_all`` wipes every copy through the
vault. The manager keeps one more clone to answer later logins without
another key derivation, and wipes it as soon as the last session ends.
Expiry is evaluated when a token is used, never by a background sweep.

Security Note:
    Tokens are kept only as SHA-256 digests. Never log tokens or keys.
"""
import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .crypto import MasterKey, token_digest
from .exceptions import InvalidToken, SessionExpired
from .models import AuthResponse, utcnow
from .vault import Vault

logger = logging.getLogger("navigator.vault")

TOKEN_BYTES = 32


class Session:
    """An issued token and the key it unlocks."""

    __slots__ = ("token", "issued_at", "expires_at", "key")

    def __init__(self, token: str, issued_at: datetime, expires_at: datetime, key: MasterKey):
        self.token = token
        self.issued_at = issued_at
        self.expires_at = expires_at
        self.key = key

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_response(self) -> AuthResponse:
        return AuthResponse(token=self.token, expires_at=self.expires_at)

    def __repr__(self) -> str:
        return f"<Session expires_at={self.expires_at.isoformat()}>"


class SessionManager:
    """Issues and validates time-limited tokens for one vault."""

    def __init__(
        self,
        vault: Vault,
        ttl: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.vault = vault
        self.ttl = timedelta(seconds=ttl if ttl is not None else vault.config.session_ttl)
        self._clock = clock or utcnow
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._master: Optional[MasterKey] = None

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def authenticate(self, password: str) -> Session:
        """Verify the master password and issue a new session.

        Raises:
            InvalidCredentials: Wrong password, or no vault to unlock; both
                cost one password verification and look the same.
        """
        key = self.vault.unlock(password, reuse=self._master)
        now = self._clock()
        session = Session(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            issued_at=now,
            expires_at=now + self.ttl,
            key=key,
        )
        with self._lock:
            master = self._master
            if master is None or not master.alive or master.epoch != key.epoch:
                self._master = key.clone()
                self.vault.track(self._master)
            self._sessions[token_digest(session.token)] = session
        logger.info("Vault session issued, expires at %s", session.expires_at.isoformat())
        return session

    def _release_master(self) -> Optional[MasterKey]:
        """Detach the shared key once no session is left; caller holds ``_lock``."""
        if self._sessions or self._master is None:
            return None
        master, self._master = self._master, None
        return master

    def _discard(self, keys: list, master: Optional[MasterKey]) -> None:
        for key in keys:
            key.wipe()
        if master is not None:
            master.wipe()
            logger.debug("Last vault session ended, master key wiped")

    def validate(self, token: str) -> MasterKey:
        """Return the key bound to ``token``.

        Raises:
            InvalidToken: Unknown, revoked or malformed token.
            SessionExpired: ``now >= expires_at``, or the vault was locked
                or rotated since the token was issued.
        """
        if not isinstance(token, str) or not token:
            raise InvalidToken()
        digest = token_digest(token)
        now = self._clock()
        with self._lock:
            session = self._sessions.get(digest)
            if session is None:
                raise InvalidToken()
            if not session.expired(now) and session.key.alive:
                return session.key
            del self._sessions[digest]
            master = self._release_master()
        self._discard([session.key], master)
        logger.debug("Vault session expired")
        raise SessionExpired()

    def revoke(self, token: str) -> bool:
        """Invalidate one token immediately; returns False if it was unknown."""
        if not isinstance(token, str) or not token:
            return False
        with self._lock:
            session = self._sessions.pop(token_digest(token), None)
            master = self._release_master()
        if session is None:
            return False
        self._discard([session.key], master)
        logger.info("Vault session revoked")
        return True

    def purge_expired(self) -> int:
        """Drop every expired session; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [d for d, s in self._sessions.items() if s.expired(now) or not s.key.alive]
            sessions = [self._sessions.pop(d) for d in stale]
            master = self._release_master()
        self._discard([s.key for s in sessions], master)
        return len(sessions)

    def lock_all(self) -> None:
        """Invalidate every session and lock the vault."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            master = self._release_master()
        self._discard([s.key for s in sessions], master)
        self.vault.lock()
        logger.info("All vault sessions invalidated (%d)", len(sessions))
