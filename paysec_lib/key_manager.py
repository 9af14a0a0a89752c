"""
Key ring for X-Pay-Token key rotation.

Rotation is a three step process because the counterparty must know the new
public key before it sees tokens signed with it:

1. ``rotate()`` adds a new pair in the *pending* state. It verifies but is
   not used for signing.
2. ``confirm_registration()`` is called once the public half has been
   registered out of band. The new pair becomes the active signing key; the
   previous one remains valid for verification.
3. ``retire_key()`` drops the old pair once no in-flight tokens need it.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from paysec_lib.xpay_token import (
    DEFAULT_TOLERANCE_SECONDS,
    SigningKeyPair,
    XPayTokenSigner,
)

logger = logging.getLogger(__name__)


class KeyState(Enum):
    """Lifecycle states of a key in the ring."""

    PENDING = "pending"  # Generated, public half not yet registered
    ACTIVE = "active"  # Used for signing
    VALID = "valid"  # Verification only (previous active key)


@dataclass
class RingEntry:
    key_pair: SigningKeyPair
    state: KeyState


class KeyRing:
    """
    Thread-safe holder of the X-Pay-Token key pairs in use.

    Usage:
        ring = KeyRing(SigningKeyPair.generate(key_id="2025-01"))
        new_pair = ring.rotate("2025-07")
        # ... register new_pair.public_key_pem() with the counterparty ...
        ring.confirm_registration("2025-07")
        ring.retire_key("2025-01")

        signer = ring.signer()
    """

    def __init__(self, initial_key: SigningKeyPair):
        if not initial_key.can_sign:
            raise ValueError("Initial key must include a private key")
        self._keys: dict[str, RingEntry] = {initial_key.key_id: RingEntry(initial_key, KeyState.ACTIVE)}
        self._active_key_id = initial_key.key_id
        self._lock = threading.RLock()

    def add_key(self, key_pair: SigningKeyPair, state: KeyState = KeyState.PENDING) -> None:
        """
        Add an existing key pair.

        Raises:
            ValueError: If the key id is taken or the key cannot become active
        """
        if state is KeyState.ACTIVE:
            raise ValueError("Use confirm_registration() to activate a key")
        with self._lock:
            if key_pair.key_id in self._keys:
                raise ValueError(f"Key '{key_pair.key_id}' already exists")
            self._keys[key_pair.key_id] = RingEntry(key_pair, state)

    def rotate(self, new_key_id: str, key_size: int = 2048) -> SigningKeyPair:
        """Generate a new pending pair and return it for registration."""
        key_pair = SigningKeyPair.generate(key_size=key_size, key_id=new_key_id)
        self.add_key(key_pair, KeyState.PENDING)
        logger.info("Rotation started: key '%s' pending registration", new_key_id)
        return key_pair

    def confirm_registration(self, key_id: str) -> None:
        """
        Make a pending key the active signing key.

        Raises:
            ValueError: If the key doesn't exist or has no private key
        """
        with self._lock:
            entry = self._keys.get(key_id)
            if entry is None:
                raise ValueError(f"Key '{key_id}' not found")
            if not entry.key_pair.can_sign:
                raise ValueError(f"Key '{key_id}' has no private key for signing")

            previous = self._keys[self._active_key_id]
            if previous is not entry:
                previous.state = KeyState.VALID
            entry.state = KeyState.ACTIVE
            self._active_key_id = key_id
        logger.info("Key '%s' is now the active signing key", key_id)

    def retire_key(self, key_id: str) -> None:
        """
        Remove a key after rotation is complete.

        Raises:
            ValueError: If trying to retire the active key
        """
        with self._lock:
            if key_id == self._active_key_id:
                raise ValueError("Cannot retire the active key. Confirm a different key first.")
            self._keys.pop(key_id, None)
        logger.info("Key '%s' retired", key_id)

    def get_key(self, key_id: str) -> Optional[SigningKeyPair]:
        with self._lock:
            entry = self._keys.get(key_id)
            return entry.key_pair if entry else None

    def get_active_key(self) -> SigningKeyPair:
        with self._lock:
            return self._keys[self._active_key_id].key_pair

    def verification_keys(self) -> list[SigningKeyPair]:
        """All keys whose signatures are currently accepted, active key first."""
        with self._lock:
            active = self._keys[self._active_key_id].key_pair
            others = [entry.key_pair for key_id, entry in self._keys.items() if key_id != self._active_key_id]
            return [active] + others

    def list_keys(self) -> dict[str, dict[str, Any]]:
        """
        List all keys with their status.

        Returns:
            Dictionary of key_id -> {state, is_active, can_sign}
        """
        with self._lock:
            return {
                key_id: {
                    "state": entry.state.value,
                    "is_active": key_id == self._active_key_id,
                    "can_sign": entry.key_pair.can_sign,
                }
                for key_id, entry in self._keys.items()
            }

    def signer(self, max_age_seconds: int = DEFAULT_TOLERANCE_SECONDS) -> XPayTokenSigner:
        """Snapshot signer bound to the current active and verification keys."""
        return XPayTokenSigner(
            self.get_active_key(),
            verification_keys=self.verification_keys(),
            max_age_seconds=max_age_seconds,
        )
