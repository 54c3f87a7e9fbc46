import asyncio
import socket

import pytest

from shush import client as c
from shush import crypto
from shush import messages as m
from shush.client import ChatClient
from shush.errors import RecipientUnavailable
from shush.framing import LENGTH_STRUCT, MAX_FRAME_SIZE, encode_frame, read_frame, write_frame
from shush.relay import RelayServer

TIMEOUT = 5


async def wait_until(client, predicate):
    """Drain client events until `predicate()` holds."""
    async def loop():
        while not predicate():
            await client.events.get()
    await asyncio.wait_for(loop(), TIMEOUT)


async def next_event(client, kind):
    async def loop():
        while True:
            event = await client.events.get()
            if event.kind == kind:
                return event
    return await asyncio.wait_for(loop(), TIMEOUT)


def run_with_relay(scenario):
    async def main():
        relay = RelayServer("127.0.0.1", 0)
        await relay.start()
        try:
            await scenario(relay)
        finally:
            await relay.stop()
    asyncio.run(main())


def test_alice_says_hello_to_bob():
    async def scenario(relay):
        alice = ChatClient(("127.0.0.1", relay.port), display_name="Alice")
        bob = ChatClient(("127.0.0.1", relay.port))
        try:
            a_id = await alice.connect()
            b_id = await bob.connect()
            assert a_id != b_id
            assert alice.display_name == "Alice"
            assert bob.display_name

            await wait_until(alice, lambda: len(alice.roster) == 2)
            await wait_until(bob, lambda: len(bob.roster) == 2)
            assert set(alice.roster) == {a_id, b_id}
            assert [e.identity for e in alice.users()] == [b_id]
            assert alice.roster[b_id].public_key == bob.keys.current().public_key

            await alice.send(b_id, "hello")
            event = await next_event(bob, c.MESSAGE)
            assert event.text == "hello"
            assert event.sender == a_id
            assert event.sender_name == "Alice"

            assert bob.log.unread(a_id) == 1
            assert [e.plaintext for e in bob.thread(a_id)] == ["hello"]
            assert [e.plaintext for e in alice.thread(b_id)] == ["hello"]
        finally:
            await alice.close()
            await bob.close()

    run_with_relay(scenario)


def test_disconnect_removes_user_from_everyone_roster():
    async def scenario(relay):
        alice = ChatClient(("127.0.0.1", relay.port))
        bob = ChatClient(("127.0.0.1", relay.port))
        try:
            await alice.connect()
            b_id = await bob.connect()
            await wait_until(alice, lambda: b_id in alice.roster)

            await bob.close()
            await wait_until(alice, lambda: b_id not in alice.roster)
            assert len(relay.directory) == 1

            with pytest.raises(RecipientUnavailable):
                await alice.send(b_id, "too late")
        finally:
            await alice.close()

    run_with_relay(scenario)


def test_rotated_key_reaches_peers_and_still_decrypts():
    async def scenario(relay):
        alice = ChatClient(("127.0.0.1", relay.port))
        bob = ChatClient(("127.0.0.1", relay.port))
        try:
            await alice.connect()
            b_id = await bob.connect()
            await wait_until(alice, lambda: b_id in alice.roster)
            old_key = alice.roster[b_id].public_key

            assert await bob.rotate_now() is True
            new_key = bob.keys.current().public_key
            assert new_key != old_key
            await wait_until(alice, lambda: alice.roster[b_id].public_key == new_key)

            await alice.send(b_id, "after rotation")
            assert (await next_event(bob, c.MESSAGE)).text == "after rotation"
        finally:
            await alice.close()
            await bob.close()

    run_with_relay(scenario)


def test_message_sealed_for_retiring_key_decrypts_in_grace_window():
    async def scenario(relay):
        bob = ChatClient(("127.0.0.1", relay.port), grace_period=0.2)
        try:
            b_id = await bob.connect()
            reader, writer, _ = await _raw_register(relay)
            old_key = bob.keys.current().public_key

            await bob.rotate_now()
            stale = crypto.encrypt_sync("in flight", old_key)
            await write_frame(writer, m.private_message_out(b_id, stale))
            assert (await next_event(bob, c.MESSAGE)).text == "in flight"

            await asyncio.sleep(0.4)
            await write_frame(writer, m.private_message_out(b_id, stale))
            event = await next_event(bob, c.ERROR)
            assert event.text == c.UNDECRYPTABLE
            writer.close()
        finally:
            await bob.close()

    run_with_relay(scenario)


def test_relay_drops_messages_for_absent_recipients_silently():
    async def scenario(relay):
        reader, writer, _ = await _raw_register(relay)
        env = crypto.encrypt_sync("into the void", crypto.generate_keypair().public_key)
        await write_frame(writer, m.private_message_out("nobody-here", env))

        # Nothing comes back for the drop; the next reply is for the unknown type.
        await write_frame(writer, m.new_frame("bogus"))
        frame = await asyncio.wait_for(_next_non_roster(reader), TIMEOUT)
        assert frame["type"] == m.ERROR
        assert frame["body"]["code"] == m.UNKNOWN_TYPE
        writer.close()

    run_with_relay(scenario)


def test_relay_rejects_malformed_frames_but_keeps_connection():
    async def scenario(relay):
        reader, writer, _ = await _raw_register(relay)
        await write_frame(writer, {"type": m.PRIVATE_MESSAGE, "body": {"to": "x", "encryptedMessage": {}}})
        frame = await asyncio.wait_for(_next_non_roster(reader), TIMEOUT)
        assert frame["body"]["code"] == m.BAD_FRAME

        await write_frame(writer, {"type": m.REGISTER, "body": {"publicKey": "zz"}})
        frame = await asyncio.wait_for(_next_non_roster(reader), TIMEOUT)
        assert frame["body"]["code"] == m.BAD_FRAME
        writer.close()

    run_with_relay(scenario)


def test_oversized_frame_closes_connection_and_removes_entry():
    async def scenario(relay):
        reader, writer, identity = await _raw_register(relay)
        assert identity in relay.directory
        writer.write(LENGTH_STRUCT.pack(MAX_FRAME_SIZE + 1))
        await writer.drain()
        await asyncio.wait_for(_read_until_closed(reader), TIMEOUT)
        assert identity not in relay.directory
        assert identity not in relay.conns
        writer.close()

    run_with_relay(scenario)


def test_non_json_frame_closes_connection_and_removes_entry():
    async def scenario(relay):
        watcher = ChatClient(("127.0.0.1", relay.port))
        try:
            await watcher.connect()
            reader, writer, identity = await _raw_register(relay)
            await wait_until(watcher, lambda: identity in watcher.roster)

            payload = b"{not json"
            writer.write(LENGTH_STRUCT.pack(len(payload)) + payload)
            await writer.drain()
            await asyncio.wait_for(_read_until_closed(reader), TIMEOUT)
            assert identity not in relay.directory
            await wait_until(watcher, lambda: identity not in watcher.roster)
            writer.close()
        finally:
            await watcher.close()

    run_with_relay(scenario)


def test_second_register_keeps_identity_and_rebroadcasts():
    async def scenario(relay):
        reader, writer, identity = await _raw_register(relay, display_name="Carol")
        fresh = crypto.generate_keypair().public_key
        await write_frame(writer, m.register(fresh))

        update = await asyncio.wait_for(_next_of_type(reader, m.USERS_UPDATE), TIMEOUT)
        roster = {e.identity: e for e in m.parse_users_update(update["body"])}
        assert roster[identity].public_key == fresh
        assert roster[identity].display_name == "Carol"

        done = await asyncio.wait_for(_next_of_type(reader, m.REGISTRATION_COMPLETE), TIMEOUT)
        assert done["body"]["identity"] == identity
        assert done["body"]["displayName"] == "Carol"
        assert len(relay.directory) == 1
        assert relay.directory.get(identity).public_key == fresh
        writer.close()

    run_with_relay(scenario)


def test_private_message_from_unregistered_connection_is_dropped():
    async def scenario(relay):
        bob = ChatClient(("127.0.0.1", relay.port))
        try:
            b_id = await bob.connect()
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.port)
            env = crypto.encrypt_sync("who am I", bob.keys.current().public_key)
            await write_frame(writer, m.private_message_out(b_id, env))

            # Frames are handled in order, so the drop has happened once this reply arrives.
            await write_frame(writer, m.new_frame("bogus"))
            frame = await asyncio.wait_for(_next_non_roster(reader), TIMEOUT)
            assert frame["body"]["code"] == m.UNKNOWN_TYPE

            await asyncio.sleep(0.1)
            kinds = []
            while not bob.events.empty():
                kinds.append(bob.events.get_nowait().kind)
            assert c.MESSAGE not in kinds
            assert len(bob.log) == 0
            writer.close()
        finally:
            await bob.close()

    run_with_relay(scenario)


def test_client_that_never_reads_is_dropped_not_waited_on():
    async def scenario(relay):
        relay.max_write_buffer = 64 * 1024
        loop = asyncio.get_running_loop()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
        sock.setblocking(False)
        await loop.sock_connect(sock, ("127.0.0.1", relay.port))
        lazy_reader, lazy_writer, lazy_id = await _raw_register(relay, sock=sock)
        relay_side = relay.conns[lazy_id].writer.get_extra_info("socket")
        relay_side.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4096)

        chatty_reader, chatty_writer, _ = await _raw_register(relay)
        drainer = asyncio.create_task(_read_until_closed(chatty_reader))
        data = encode_frame(m.update_key(crypto.generate_keypair().public_key))

        async def flood():
            while lazy_id in relay.directory:
                for _ in range(20):
                    chatty_writer.write(data)
                await chatty_writer.drain()
                await asyncio.sleep(0.01)

        try:
            await asyncio.wait_for(flood(), TIMEOUT * 4)
            assert lazy_id not in relay.conns

            # The relay is still responsive for everyone else.
            late = ChatClient(("127.0.0.1", relay.port))
            try:
                await asyncio.wait_for(late.connect(), TIMEOUT)
                assert late.identity in relay.directory
            finally:
                await late.close()
        finally:
            drainer.cancel()
            chatty_writer.close()
            lazy_writer.close()

    run_with_relay(scenario)


async def _raw_register(relay, display_name=None, sock=None):
    """
    A bare protocol client: register a fresh key and read up to
    registration-complete. Returns (reader, writer, identity).
    """
    if sock is None:
        reader, writer = await asyncio.open_connection("127.0.0.1", relay.port)
    else:
        reader, writer = await asyncio.open_connection(sock=sock)
    await write_frame(writer, m.register(crypto.generate_keypair().public_key, display_name))
    done = await asyncio.wait_for(_next_of_type(reader, m.REGISTRATION_COMPLETE), TIMEOUT)
    return reader, writer, done["body"]["identity"]


async def _next_of_type(reader, msg_type):
    while True:
        frame = await read_frame(reader)
        if frame["type"] == msg_type:
            return frame


async def _next_non_roster(reader):
    while True:
        frame = await read_frame(reader)
        if frame["type"] != m.USERS_UPDATE:
            return frame


async def _read_until_closed(reader):
    """Consume frames until the relay hangs up."""
    try:
        while True:
            await read_frame(reader)
    except (asyncio.IncompleteReadError, ConnectionError):
        pass
