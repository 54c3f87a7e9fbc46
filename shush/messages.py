"""
messages.py: wire message records and their validation.

Every frame on the wire has the same fixed shape:

    {"type": <str>, "id": <uuid4 str>, "ts": <ms int>, "body": {...}}

Builders below return ready-to-send dicts; parsers take a `body` and return
typed values, raising DecodeFailure on anything malformed. Nothing in a
frame is signed: the relay assigns names and identities and clients have to
take its word for it.
"""

import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from . import crypto
from .crypto import EncryptedEnvelope
from .directory import DirectoryEntry
from .errors import DecodeFailure

# -----------------------
# Message type tags
# -----------------------
REGISTER = "register"                            # client -> relay
REGISTRATION_COMPLETE = "registration-complete"  # relay -> registering client
USERS_UPDATE = "users-update"                    # relay -> everyone
PRIVATE_MESSAGE = "private-message"              # both directions, different bodies
UPDATE_KEY = "update-key"                        # client -> relay, after rotation
ERROR = "error"                                  # relay -> client

BAD_FRAME = "BAD_FRAME"
UNKNOWN_TYPE = "UNKNOWN_TYPE"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_frame(msg_type: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "type": msg_type,
        "id": str(uuid.uuid4()),
        "ts": now_ms(),
        "body": body or {},
    }


def parse_frame(obj: Any) -> Tuple[str, Dict[str, Any]]:
    """Split a decoded frame into (type, body) after checking its shape."""
    if not isinstance(obj, dict):
        raise DecodeFailure("frame must be an object")
    msg_type = obj.get("type")
    body = obj.get("body", {})
    if not isinstance(msg_type, str) or not msg_type:
        raise DecodeFailure("frame has no type")
    if not isinstance(body, dict):
        raise DecodeFailure("frame body must be an object")
    return msg_type, body


def _str_field(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeFailure(f"'{key}' must be a non-empty string")
    return value


# -------------------------
# Builders
# -------------------------

def register(public_key: bytes, display_name: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"publicKey": public_key.hex()}
    if display_name:
        body["sessionData"] = {"displayName": display_name}
    return new_frame(REGISTER, body)


def registration_complete(entry: DirectoryEntry) -> Dict[str, Any]:
    return new_frame(REGISTRATION_COMPLETE, entry.to_wire())


def users_update(entries: List[DirectoryEntry]) -> Dict[str, Any]:
    return new_frame(USERS_UPDATE, {"users": [e.to_wire() for e in entries]})


def private_message_out(to_identity: str, envelope: EncryptedEnvelope) -> Dict[str, Any]:
    return new_frame(PRIVATE_MESSAGE, {"to": to_identity, "encryptedMessage": envelope.to_wire()})


def private_message_in(from_identity: str, from_name: str,
                       envelope: EncryptedEnvelope) -> Dict[str, Any]:
    return new_frame(PRIVATE_MESSAGE, {
        "from": from_identity,
        "fromName": from_name,
        "encryptedMessage": envelope.to_wire(),
    })


def update_key(public_key: bytes) -> Dict[str, Any]:
    return new_frame(UPDATE_KEY, {"publicKey": public_key.hex()})


def error(code: str, detail: Optional[str] = None) -> Dict[str, Any]:
    body = {"code": code}
    if detail:
        body["detail"] = detail
    return new_frame(ERROR, body)


# -------------------------
# Parsers
# -------------------------

def parse_register(body: Dict[str, Any]) -> Tuple[bytes, Optional[str]]:
    public_key = crypto.public_key_from_hex(body.get("publicKey"))
    session = body.get("sessionData")
    name = None
    if isinstance(session, dict) and isinstance(session.get("displayName"), str):
        name = session["displayName"]
    return public_key, name


def parse_entry(obj: Any) -> DirectoryEntry:
    if not isinstance(obj, dict):
        raise DecodeFailure("roster entry must be an object")
    return DirectoryEntry(
        identity=_str_field(obj, "identity"),
        public_key=crypto.public_key_from_hex(obj.get("publicKey")),
        display_name=_str_field(obj, "displayName"),
    )


def parse_users_update(body: Dict[str, Any]) -> List[DirectoryEntry]:
    users = body.get("users")
    if not isinstance(users, list):
        raise DecodeFailure("'users' must be a list")
    return [parse_entry(u) for u in users]


def parse_private_out(body: Dict[str, Any]) -> Tuple[str, EncryptedEnvelope]:
    return _str_field(body, "to"), EncryptedEnvelope.from_wire(body.get("encryptedMessage"))


def parse_private_in(body: Dict[str, Any]) -> Tuple[str, str, EncryptedEnvelope]:
    return (
        _str_field(body, "from"),
        _str_field(body, "fromName"),
        EncryptedEnvelope.from_wire(body.get("encryptedMessage")),
    )


def parse_update_key(body: Dict[str, Any]) -> bytes:
    return crypto.public_key_from_hex(body.get("publicKey"))
