"""Client-local conversation log. Never transmitted; lives for one session."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


@dataclass(frozen=True)
class ConversationEntry:
    counterpart: str      # relay identity of the other side
    direction: Direction
    plaintext: str


class ConversationLog:
    """Append-only; grows without bound for the life of the session."""

    def __init__(self) -> None:
        self._entries: List[ConversationEntry] = []
        self._unread: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def record_sent(self, counterpart: str, plaintext: str) -> ConversationEntry:
        entry = ConversationEntry(counterpart, Direction.SENT, plaintext)
        self._entries.append(entry)
        return entry

    def record_received(self, counterpart: str, plaintext: str, unread: bool = True) -> ConversationEntry:
        entry = ConversationEntry(counterpart, Direction.RECEIVED, plaintext)
        self._entries.append(entry)
        if unread:
            self._unread[counterpart] = self._unread.get(counterpart, 0) + 1
        return entry

    def thread(self, counterpart: str) -> List[ConversationEntry]:
        """Everything exchanged with one peer, oldest first. Viewing clears its unread count."""
        self._unread.pop(counterpart, None)
        return [e for e in self._entries if e.counterpart == counterpart]

    def unread(self, counterpart: str) -> int:
        return self._unread.get(counterpart, 0)
