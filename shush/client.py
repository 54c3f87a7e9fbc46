"""
client.py: one chat participant.

What a ChatClient owns (nothing here is global):
- a KeyStore with our identity keypair(s) and the rotation scheduler that
  refreshes them,
- a read-only cache of the relay's roster, replaced wholesale on every
  users-update,
- the local ConversationLog.

A UI sits on top of `events` (roster changes, decrypted messages, errors)
and calls `send()` with a recipient identity and plaintext. It never gets
to touch a private key.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import crypto
from . import messages as m
from .directory import DirectoryEntry
from .errors import AuthenticationFailure, DecodeFailure, FrameError, RecipientUnavailable
from .framing import read_frame, write_frame
from .history import ConversationEntry, ConversationLog
from .keystore import GRACE_PERIOD, KeyPair, KeyStore
from .rotation import ROTATION_INTERVAL, KeyRotationScheduler

logger = logging.getLogger(__name__)

# ChatEvent kinds
REGISTERED = "registered"
ROSTER = "roster"
MESSAGE = "message"
ERROR = "error"
DISCONNECTED = "disconnected"

UNDECRYPTABLE = "Error decrypting message"


@dataclass(frozen=True)
class ChatEvent:
    kind: str
    sender: Optional[str] = None
    sender_name: Optional[str] = None
    text: Optional[str] = None


class ChatClient:
    def __init__(
        self,
        relay: Tuple[str, int],
        display_name: Optional[str] = None,
        rotation_interval: float = ROTATION_INTERVAL,
        grace_period: float = GRACE_PERIOD,
        keygen: Callable[[], KeyPair] = crypto.generate_keypair,
    ) -> None:
        self.relay = relay
        self.requested_name = display_name
        self.keys = KeyStore(keygen(), grace_period=grace_period)
        self.rotation = KeyRotationScheduler(self.keys, announce=self._announce_key,
                                             interval=rotation_interval, keygen=keygen)
        self.log = ConversationLog()
        self.roster: Dict[str, DirectoryEntry] = {}
        self.identity: Optional[str] = None
        self.display_name: Optional[str] = None
        self.active: Optional[str] = None  # peer whose thread is on screen
        self.events: "asyncio.Queue[ChatEvent]" = asyncio.Queue()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._registered = asyncio.Event()

    # -------------------------
    # Lifecycle
    # -------------------------

    async def connect(self, timeout: float = 10.0) -> str:
        """Open the relay connection, register our public key, return our identity."""
        self._reader, self._writer = await asyncio.open_connection(*self.relay)
        self._reader_task = asyncio.create_task(self._reader_loop(), name="relay-reader")
        await write_frame(self._writer, m.register(self.keys.current().public_key, self.requested_name))

        waiter = asyncio.create_task(self._registered.wait())
        await asyncio.wait({waiter, self._reader_task}, timeout=timeout,
                           return_when=asyncio.FIRST_COMPLETED)
        if not self._registered.is_set():
            waiter.cancel()
            await self.close()
            raise ConnectionError("relay did not complete registration")

        self.rotation.start()
        return self.identity

    async def close(self) -> None:
        """Stop rotation, drop the connection and erase key material."""
        await self.rotation.stop()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
        self.keys.close()

    # -------------------------
    # What a UI calls
    # -------------------------

    def users(self) -> List[DirectoryEntry]:
        """Everyone online except us."""
        return [e for e in self.roster.values() if e.identity != self.identity]

    def find(self, ref: str) -> Optional[DirectoryEntry]:
        """Look a peer up by identity, falling back to display name."""
        if ref in self.roster:
            return self.roster[ref]
        for entry in self.users():
            if entry.display_name == ref:
                return entry
        return None

    async def send(self, recipient: str, plaintext: str) -> ConversationEntry:
        """
        Encrypt for `recipient` (an identity) and hand it to the relay.

        Raises RecipientUnavailable if the peer isn't in our roster. If it is
        but leaves before the relay sees the message, the relay drops it
        silently and we never find out.
        """
        entry = self.roster.get(recipient)
        if entry is None or self._writer is None:
            raise RecipientUnavailable(recipient)
        envelope = await crypto.encrypt(plaintext, entry.public_key)
        await write_frame(self._writer, m.private_message_out(recipient, envelope))
        return self.log.record_sent(recipient, plaintext)

    def thread(self, counterpart: str) -> List[ConversationEntry]:
        self.active = counterpart
        return self.log.thread(counterpart)

    async def rotate_now(self) -> bool:
        return await self.rotation.rotate_once()

    # -------------------------
    # Inbound
    # -------------------------

    async def _announce_key(self, pair: KeyPair) -> None:
        if self._writer is None:
            raise ConnectionError("not connected")
        await write_frame(self._writer, m.update_key(pair.public_key))

    async def _reader_loop(self) -> None:
        try:
            while True:
                frame = await read_frame(self._reader)
                await self.process_incoming(frame)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        except FrameError as exc:
            logger.warning("Relay sent a bad frame: %s", exc)
        finally:
            await self.events.put(ChatEvent(DISCONNECTED))

    async def process_incoming(self, frame: Dict[str, Any]) -> None:
        try:
            msg_type, body = m.parse_frame(frame)
            if msg_type == m.REGISTRATION_COMPLETE:
                me = m.parse_entry(body)
                self.identity, self.display_name = me.identity, me.display_name
                self._registered.set()
                logger.info("Registered as %s (%s)", me.display_name, me.identity)
                await self.events.put(ChatEvent(REGISTERED, me.identity, me.display_name))

            elif msg_type == m.USERS_UPDATE:
                self.roster = {e.identity: e for e in m.parse_users_update(body)}
                await self.events.put(ChatEvent(ROSTER))

            elif msg_type == m.PRIVATE_MESSAGE:
                await self._receive(body)

            elif msg_type == m.ERROR:
                logger.warning("Relay error: %s", body)
                await self.events.put(ChatEvent(ERROR, text=str(body.get("code"))))
        except DecodeFailure as exc:
            logger.warning("Ignoring malformed frame from relay: %s", exc)

    async def _receive(self, body: Dict[str, Any]) -> None:
        sender, sender_name = body.get("from"), body.get("fromName")
        try:
            sender, sender_name, envelope = m.parse_private_in(body)
            text = await crypto.open_envelope(envelope, self.keys)
        except (AuthenticationFailure, DecodeFailure) as exc:
            # Terminal for this message: no retry, nothing logged to the thread.
            logger.warning("Decryption error from %s: %s", sender, exc)
            await self.events.put(ChatEvent(ERROR, sender, sender_name, UNDECRYPTABLE))
            return
        self.log.record_received(sender, text, unread=sender != self.active)
        await self.events.put(ChatEvent(MESSAGE, sender, sender_name, text))
