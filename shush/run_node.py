import argparse
import asyncio
import logging
from typing import Tuple

from .client import DISCONNECTED, ERROR, MESSAGE, ROSTER, ChatClient
from .config import Settings
from .errors import DecodeFailure, RecipientUnavailable
from .relay import RelayServer

"""
run_node.py: single entry point for both halves of shush.

- Relay:   python -m shush.run_node --mode relay --host 0.0.0.0 --port 3000
- Client:  python -m shush.run_node --mode client --relay 127.0.0.1:3000 [--name BlueFox]

Environment (SHUSH_HOST, SHUSH_PORT, SHUSH_ROTATION_INTERVAL,
SHUSH_GRACE_PERIOD, SHUSH_LOG_LEVEL) sets defaults; flags win.
"""

logger = logging.getLogger("shush")

HELP = """Commands:
  /users                  List who is online
  /msg <name|id> <text>   Send an encrypted message
  /thread <name|id>       Show the conversation with a peer
  /rotate                 Rotate our identity key now
  /quit                   Leave
Plain text goes to the peer from the last /msg or /thread."""

def setup_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

# -------------------------
# Process runners
# -------------------------

async def run_relay(settings: Settings) -> None:
    """Serve the relay until cancelled."""
    relay = RelayServer(settings.host, settings.port)
    await relay.serve_forever()

async def print_events(client: ChatClient) -> None:
    """Pretty-print what the relay sends us."""
    while True:
        event = await client.events.get()
        if event.kind == MESSAGE:
            print(f"[{event.sender_name}] {event.text}")
        elif event.kind == ROSTER:
            names = ", ".join(e.display_name for e in client.users()) or "nobody"
            print(f"* online: {names}")
        elif event.kind == ERROR:
            print(f"! {event.text}")
        elif event.kind == DISCONNECTED:
            print("* disconnected from relay")
            return

async def send_line(client: ChatClient, identity: str, text: str) -> None:
    try:
        await client.send(identity, text)
    except RecipientUnavailable:
        print("! that user is no longer online")
    except DecodeFailure as exc:
        print(f"! could not encrypt for that user: {exc}")

async def handle_command(client: ChatClient, line: str) -> bool:
    """Act on one input line. Returns False when the user asked to leave."""
    if line == "/quit":
        return False
    if line == "/help":
        print(HELP)
    elif line == "/users":
        for entry in client.users():
            unread = client.log.unread(entry.identity)
            badge = f" ({unread} unread)" if unread else ""
            print(f"  {entry.display_name} [{entry.identity}]{badge}")
    elif line == "/rotate":
        ok = await client.rotate_now()
        print("* key rotated" if ok else "! key rotation failed")
    elif line.startswith("/thread "):
        peer = client.find(line.split(maxsplit=1)[1])
        if peer is None:
            print("! no such user")
            return True
        for entry in client.thread(peer.identity):
            who = "You" if entry.direction == "sent" else peer.display_name
            print(f"  {who}: {entry.plaintext}")
    elif line.startswith("/msg "):
        parts = line.split(maxsplit=2)
        if len(parts) != 3:
            print("Usage: /msg <name|id> <text>")
            return True
        peer = client.find(parts[1])
        if peer is None:
            print("! no such user")
            return True
        client.active = peer.identity
        await send_line(client, peer.identity, parts[2])
    elif client.active is not None:
        await send_line(client, client.active, line)
    else:
        print("Please select a user to chat with (/msg or /thread)")
    return True

async def run_client(relay: Tuple[str, int], name: str, settings: Settings) -> None:
    client = ChatClient(relay, display_name=name,
                        rotation_interval=settings.rotation_interval,
                        grace_period=settings.grace_period)
    await client.connect()
    print(f"Connected as {client.display_name} ({client.identity}). /help for commands.")
    printer = asyncio.create_task(print_events(client))
    loop = asyncio.get_running_loop()
    try:
        while not printer.done():
            line = (await loop.run_in_executor(None, input)).strip()
            if line and not await handle_command(client, line):
                break
    except EOFError:
        pass
    finally:
        printer.cancel()
        await client.close()

# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="shush")
    p.add_argument("--mode", choices=["relay", "client"], required=True)
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--relay", help="host:port of the relay (client mode)")
    p.add_argument("--name", help="display name to request (client mode)")
    p.add_argument("--rotation-interval", type=float)
    p.add_argument("--grace-period", type=float)
    p.add_argument("--log-level")
    return p.parse_args(argv)

def main(argv=None) -> None:
    args = parse_args(argv)
    settings = Settings.from_env().override(
        host=args.host,
        port=args.port,
        rotation_interval=args.rotation_interval,
        grace_period=args.grace_period,
        log_level=args.log_level.upper() if args.log_level else None,
    )
    setup_logging(settings.log_level)

    try:
        if args.mode == "relay":
            asyncio.run(run_relay(settings))
        else:
            if args.relay:
                host, port = args.relay.rsplit(":", 1)
                relay = (host, int(port))
            else:
                relay = (settings.host, settings.port)
            asyncio.run(run_client(relay, args.name, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")

if __name__ == "__main__":
    main()
