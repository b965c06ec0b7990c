"""
Access control, request signatures, pause gating and the re-entrancy guard.

``AccessController`` answers the questions entry points ask before
delegating to the engine: *is the caller the owner?*, *is the system
paused?* and, for remote requests, *was this request signed by the key
registered for the identity it acts as?*  Signatures are secp256k1 DER
over SHA-256 of ``signing_payload(method, path, nonce, body)``.  Nonces
are millisecond timestamps; each key must present strictly increasing
nonces within ``nonce_window`` seconds of the server clock, so a captured
request can neither be replayed nor redirected to another route.

``SessionGuard`` is the mutual-exclusion scope wrapped around every
externally reachable mutating operation.  A second operation entered while
one is in flight (for example from a custody callback) is rejected with
``ReentrancyError`` instead of waiting.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from ecdsa import BadSignatureError, SECP256k1, VerifyingKey
from ecdsa.keys import MalformedPointError
from ecdsa.util import sigdecode_der

from stakeflow_core.errors import NotOwnerError, PausedError, ReentrancyError

logger = logging.getLogger("stakeflow_access")

DEFAULT_NONCE_WINDOW = 300  # seconds


def signing_payload(method: str, path: str, nonce: int, body: bytes) -> bytes:
    """The exact bytes a remote caller signs for one request."""
    return f"{method.upper()}\n{path}\n{nonce}\n".encode() + body


def _verify(public_key_hex: str, message: bytes, signature_hex: str) -> bool:
    if not public_key_hex or not signature_hex:
        return False
    try:
        raw = bytes.fromhex(public_key_hex)
        if len(raw) == 65 and raw[0] == 0x04:
            raw = raw[1:]
        vk = VerifyingKey.from_string(raw, curve=SECP256k1)
        signature = bytes.fromhex(signature_hex)
        return vk.verify(
            signature, message, hashfunc=hashlib.sha256, sigdecode=sigdecode_der,
        )
    except (BadSignatureError, MalformedPointError, ValueError) as exc:
        logger.debug(f"Signature rejected: {exc}")
        return False


class AccessController:
    """Owner identity, user keys, request nonces and the global pause flag."""

    def __init__(
        self,
        owner: str,
        owner_public_key: str = "",
        user_public_keys: Optional[dict[str, str]] = None,
        nonce_window: int = DEFAULT_NONCE_WINDOW,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.owner = owner
        self.owner_public_key = owner_public_key  # hex, uncompressed or compressed
        self.user_public_keys: dict[str, str] = dict(user_public_keys or {})
        self.nonce_window = nonce_window
        self.paused: bool = False
        self._clock = clock or time.time
        self._last_nonce: dict[str, int] = {}  # public key hex -> highest accepted

    def require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise NotOwnerError(f"{caller} is not the owner")

    def require_not_paused(self) -> None:
        if self.paused:
            raise PausedError("System is paused")

    def set_paused(self, caller: str, paused: bool) -> None:
        self.require_owner(caller)
        self.paused = paused
        logger.info(f"System {'paused' if paused else 'resumed'} by {caller}")

    def transfer_ownership(
        self, caller: str, new_owner: str, new_public_key: str = "",
    ) -> None:
        self.require_owner(caller)
        self.owner = new_owner
        self.owner_public_key = new_public_key
        logger.info(f"Ownership transferred to {new_owner}")

    def register_user_key(self, user_id: str, public_key_hex: str) -> None:
        self.user_public_keys[user_id] = public_key_hex
        logger.info(f"Signing key registered for {user_id}")

    # ── signatures ──────────────────────────────────────────────────

    def verify_owner_signature(self, message: bytes, signature_hex: str) -> bool:
        """
        True if *signature_hex* is the owner key's DER signature of
        SHA-256(*message*).  Always False when no owner key is configured.
        """
        return _verify(self.owner_public_key, message, signature_hex)

    def verify_user_signature(
        self, user_id: str, message: bytes, signature_hex: str,
    ) -> bool:
        """Same as ``verify_owner_signature`` against *user_id*'s registered key."""
        return _verify(self.user_public_keys.get(user_id, ""), message, signature_hex)

    def accept_nonce(self, public_key_hex: str, nonce: int) -> bool:
        """
        Record *nonce* for *public_key_hex* if it is fresh.

        Call only after the signature checked out, otherwise a forged
        request could burn nonces.
        """
        now_ms = int(self._clock() * 1000)
        if abs(now_ms - nonce) > self.nonce_window * 1000:
            logger.warning(f"Stale nonce {nonce} rejected (server time {now_ms})")
            return False
        if nonce <= self._last_nonce.get(public_key_hex, -1):
            logger.warning(f"Reused nonce {nonce} rejected")
            return False
        self._last_nonce[public_key_hex] = nonce
        return True


class SessionGuard:
    """Non-blocking lock scope; nested entry raises ``ReentrancyError``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holder: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def session(self, name: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise ReentrancyError(f"{name} rejected: {self._holder} already in progress")
        self._holder = name
        try:
            yield
        finally:
            self._holder = None
            self._lock.release()
