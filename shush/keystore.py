"""
keystore.py: who owns our identity keys, and for how long.

What lives here:
- KeyPair: raw secp256k1 key material (public point + private scalar).
- KeyStore: exactly one "current" keypair and at most one "retiring" one.

Notes:
- The private scalar lives in a bytearray: when a retiring key's
  grace window ends we overwrite those bytes with zeros in place.
- The store never generates keys itself. Callers hand it a ready KeyPair
  (see crypto.generate_keypair) so a failed keygen simply never reaches us.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

GRACE_PERIOD = 5 * 60  # seconds a retired key keeps decrypting


@dataclass(eq=False)
class KeyPair:
    public_key: bytes        # uncompressed SEC1 point (65 bytes)
    private_key: bytearray   # big-endian scalar (32 bytes)
    created_at: float = field(default_factory=time.time)

    @property
    def public_hex(self) -> str:
        return self.public_key.hex()

    @property
    def wiped(self) -> bool:
        return not any(self.private_key)

    def wipe(self) -> None:
        """Overwrite every private byte with zero."""
        for i in range(len(self.private_key)):
            self.private_key[i] = 0

    def __repr__(self) -> str:
        # Never let the scalar end up in a log line.
        return f"KeyPair(public={self.public_hex[:16]}..., wiped={self.wiped})"


class KeyStore:
    """
    Current + retiring identity keys for one client.

    rotate() promotes a new pair, demotes the old one and arms a timer that
    destroys it after `grace_period` seconds. Rotations are serialized by a
    lock; a rotation that finds a key still retiring destroys it first, so
    there is never more than one retiring key.
    """

    def __init__(self, initial: KeyPair, grace_period: float = GRACE_PERIOD) -> None:
        self.grace_period = grace_period
        self._current = initial
        self._retiring: Optional[KeyPair] = None
        self._expiry: Optional[asyncio.TimerHandle] = None
        self._lock = asyncio.Lock()

    def current(self) -> KeyPair:
        return self._current

    def retiring(self) -> Optional[KeyPair]:
        return self._retiring

    def candidates(self) -> Iterator[KeyPair]:
        """Keys to try for decryption, newest first."""
        yield self._current
        if self._retiring is not None:
            yield self._retiring

    async def rotate(self, new_pair: KeyPair) -> KeyPair:
        """Make `new_pair` current and start the old one's grace window. Returns the old pair."""
        async with self._lock:
            if self._retiring is not None:
                logger.warning("Rotation while a key is still retiring; destroying it early")
                self.destroy_retiring()

            previous = self._current
            self._current = new_pair
            self._retiring = previous

            loop = asyncio.get_running_loop()
            self._expiry = loop.call_later(self.grace_period, self._expire, previous)
            logger.info("Rotated identity key %s... -> %s... (grace %.0fs)",
                        previous.public_hex[:16], new_pair.public_hex[:16], self.grace_period)
            return previous

    def _expire(self, pair: KeyPair) -> None:
        # Timer callback; only act if that exact pair is still the retiring one.
        self._expiry = None
        if self._retiring is pair:
            self.destroy_retiring()

    def destroy_retiring(self) -> None:
        """Erase and drop the retiring key. Safe to call when nothing is retiring."""
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        if self._retiring is None:
            return
        pair, self._retiring = self._retiring, None
        pair.wipe()
        logger.info("Destroyed retiring key %s...", pair.public_hex[:16])

    def close(self) -> None:
        """Shutdown: cancel the pending timer and erase everything we hold."""
        self.destroy_retiring()
        self._current.wipe()
