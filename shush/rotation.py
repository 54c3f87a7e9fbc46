"""
rotation.py: periodic identity key rotation.

Every `interval` seconds: generate a keypair, hand it to KeyStore.rotate
(which arms the grace-window destruction timer), then announce the new
public key so future senders encrypt against it.

Rotation is best-effort. A failed keygen leaves the current key in place and
we just try again next tick; a failed announcement is logged and the key
stays rotated (peers will pick it up on the next roster broadcast).
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from . import crypto
from .errors import KeyGenerationFailure
from .keystore import KeyPair, KeyStore

logger = logging.getLogger(__name__)

ROTATION_INTERVAL = 60 * 60  # seconds

Announcer = Callable[[KeyPair], Awaitable[None]]


class KeyRotationScheduler:
    def __init__(
        self,
        store: KeyStore,
        announce: Optional[Announcer] = None,
        interval: float = ROTATION_INTERVAL,
        keygen: Callable[[], KeyPair] = crypto.generate_keypair,
    ) -> None:
        self.store = store
        self.announce = announce
        self.interval = interval
        self.keygen = keygen
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="key-rotation")

    async def stop(self) -> None:
        """Cancel the timer (shutdown only)."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.rotate_once()
            except Exception:
                logger.exception("Key rotation tick failed")

    async def rotate_once(self) -> bool:
        """One rotation tick. Returns False if the tick was skipped."""
        try:
            new_pair = self.keygen()
        except KeyGenerationFailure as exc:
            logger.error("Key generation failed, keeping current key: %s", exc)
            return False

        await self.store.rotate(new_pair)

        if self.announce is not None:
            try:
                await self.announce(new_pair)
            except (ConnectionError, OSError) as exc:
                logger.warning("Could not announce rotated key: %s", exc)
        return True
