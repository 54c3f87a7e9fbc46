"""
relay.py: the presence relay. Accepts connections, keeps the Directory,
routes sealed envelopes between identities.

The relay never decrypts anything. It sees who is online, who talks to
whom, when, and how big the ciphertext is; it never sees plaintext.
"""

import asyncio
import logging
import secrets
from typing import Any, Dict, List, Optional

from . import messages as m
from .directory import Directory, DirectoryEntry
from .errors import DecodeFailure, FrameError
from .framing import encode_frame, read_frame, write_frame
from .router import Router

logger = logging.getLogger(__name__)

# Unsent bytes a connection may hold before the relay gives up on it.
MAX_WRITE_BUFFER = 1024 * 1024


def new_identity() -> str:
    """Opaque per-connection handle (20 URL-safe chars). Recycled on reconnect."""
    return secrets.token_urlsafe(15)


class ConnectionContext:
    """Reader/writer pair plus the identity the relay assigned to it."""
    def __init__(self, identity: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.identity = identity
        self.reader = reader
        self.writer = writer


class RelayServer:
    """
    One relay process. Owns its Directory and Router; both are torn down
    with the server, nothing is module-global.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 3000,
                 max_write_buffer: int = MAX_WRITE_BUFFER) -> None:
        self.host = host
        self.port = port
        self.max_write_buffer = max_write_buffer
        self.conns: Dict[str, ConnectionContext] = {}
        self.directory = Directory(publish=self.broadcast_roster)
        self.router = Router(self.directory, self.send_to)
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Bind and begin accepting. With port 0 the chosen port is stored back on self.port."""
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info("Relay listening on %s:%s", self.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for ctx in list(self.conns.values()):
            ctx.writer.close()
        await self._server.wait_closed()
        self._server = None

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: assign an identity, then read frames until the peer goes away."""
        ctx = ConnectionContext(new_identity(), reader, writer)
        self.conns[ctx.identity] = ctx
        logger.info("New connected user: %s", ctx.identity)
        try:
            while True:
                frame = await read_frame(reader)
                await self.process_frame(ctx, frame)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        except FrameError as exc:
            logger.warning("Closing %s after bad frame: %s", ctx.identity, exc)
        except Exception:
            logger.exception("Connection error for %s", ctx.identity)
        finally:
            self.conns.pop(ctx.identity, None)
            await self.directory.disconnect(ctx.identity)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def process_frame(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> None:
        try:
            msg_type, body = m.parse_frame(frame)
            if msg_type == m.REGISTER:
                public_key, name = m.parse_register(body)
                entry = await self.directory.register(ctx.identity, public_key, name)
                await write_frame(ctx.writer, m.registration_complete(entry))

            elif msg_type == m.PRIVATE_MESSAGE:
                to_identity, envelope = m.parse_private_out(body)
                await self.router.route(envelope, ctx.identity, to_identity)

            elif msg_type == m.UPDATE_KEY:
                await self.directory.update_key(ctx.identity, m.parse_update_key(body))

            else:
                await write_frame(ctx.writer, m.error(m.UNKNOWN_TYPE, msg_type))
        except DecodeFailure as exc:
            logger.info("Bad frame from %s: %s", ctx.identity, exc)
            await write_frame(ctx.writer, m.error(m.BAD_FRAME, str(exc)))

    async def send_to(self, identity: str, frame: Dict[str, Any]) -> None:
        ctx = self.conns.get(identity)
        if ctx is None:
            raise ConnectionError(f"no connection for {identity}")
        await write_frame(ctx.writer, frame)

    async def broadcast_roster(self, entries: List[DirectoryEntry]) -> None:
        """
        Same snapshot bytes to every connection. Called under the Directory
        lock, so this only queues bytes and never waits on a peer. A
        connection whose unsent backlog passes `max_write_buffer` is aborted;
        its handler then removes it from the Directory.
        """
        data = encode_frame(m.users_update(entries))
        for ctx in list(self.conns.values()):
            transport = ctx.writer.transport
            if transport.is_closing():
                continue
            transport.write(data)
            backlog = transport.get_write_buffer_size()
            if backlog > self.max_write_buffer:
                logger.warning("Dropping %s: %d bytes of roster updates unread",
                               ctx.identity, backlog)
                transport.abort()
