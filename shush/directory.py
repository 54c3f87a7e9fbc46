"""
directory.py: the relay's roster (connection identity -> public key + display name).

The Directory is the single source of truth for who is online. Every change
(register, key update, disconnect) is followed by a full-roster broadcast;
clients replace their cached copy wholesale, there is no diffing.

Trust boundary: nothing here ever sees a private key or message content.
A compromised relay leaks the roster and traffic metadata, not plaintext.
Display names are NOT bound to keys in any verifiable way.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_NAME_LEN = 64

FIRST_NAMES = [
    "Red", "Blue", "Green", "Yellow", "Purple", "Orange", "White", "Black",
    "Moon", "Sun", "Star", "Wind", "Sea", "Mountain", "River", "Forest",
]

SECOND_NAMES = [
    "Wolf", "Eagle", "Lion", "Tiger", "Bear", "Falcon", "Dolphin", "Fox",
    "Dragon", "Phoenix", "Unicorn", "Griffin", "Panther", "Owl", "Snake",
]


def generate_display_name() -> str:
    """Random cosmetic name like 'BlueFalcon'. Collisions are not checked."""
    return random.choice(FIRST_NAMES) + random.choice(SECOND_NAMES)


@dataclass(frozen=True)
class DirectoryEntry:
    identity: str
    public_key: bytes
    display_name: str

    def to_wire(self) -> Dict[str, str]:
        return {
            "identity": self.identity,
            "publicKey": self.public_key.hex(),
            "displayName": self.display_name,
        }


RosterSink = Callable[[List[DirectoryEntry]], Awaitable[None]]


class Directory:
    """
    In-memory roster owned by one relay process.

    Mutations go through a single asyncio.Lock and the roster snapshot is
    published while that lock is held, so every broadcast reflects exactly
    one consistent state and broadcasts go out in mutation order.
    """

    def __init__(self, publish: Optional[RosterSink] = None,
                 namer: Callable[[], str] = generate_display_name) -> None:
        self.publish = publish
        self.namer = namer
        self._entries: Dict[str, DirectoryEntry] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, identity: str) -> Optional[DirectoryEntry]:
        return self._entries.get(identity)

    def roster(self) -> List[DirectoryEntry]:
        """Snapshot copy in registration order."""
        return list(self._entries.values())

    async def register(self, identity: str, public_key: bytes,
                       display_name: Optional[str] = None) -> DirectoryEntry:
        """
        Add (or replace) the entry for `identity` and broadcast the roster.
        A supplied display name is reused; otherwise a re-registration keeps
        its old name and a first registration gets a random one.
        """
        async with self._lock:
            name = _clean_name(display_name)
            if name is None:
                previous = self._entries.get(identity)
                name = previous.display_name if previous else self.namer()
            entry = DirectoryEntry(identity, bytes(public_key), name)
            self._entries[identity] = entry
            logger.info("User registered: %s (%s)", name, identity)
            await self._publish()
            return entry

    async def update_key(self, identity: str, public_key: bytes) -> Optional[DirectoryEntry]:
        """Swap in a rotated public key. Unknown identities are ignored."""
        async with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                logger.debug("Key update for unknown identity %s ignored", identity)
                return None
            entry = DirectoryEntry(identity, bytes(public_key), entry.display_name)
            self._entries[identity] = entry
            logger.info("Public key updated for %s (%s)", entry.display_name, identity)
            await self._publish()
            return entry

    async def disconnect(self, identity: str) -> bool:
        """Remove the entry entirely and broadcast. Returns False if it wasn't there."""
        async with self._lock:
            entry = self._entries.pop(identity, None)
            if entry is None:
                return False
            logger.info("User disconnected: %s (%s)", entry.display_name, identity)
            await self._publish()
            return True

    async def _publish(self) -> None:
        if self.publish is not None:
            await self.publish(self.roster())


def _clean_name(name: Optional[str]) -> Optional[str]:
    if not isinstance(name, str):
        return None
    name = name.strip()[:MAX_NAME_LEN]
    return name or None
