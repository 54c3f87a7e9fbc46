"""
framing.py: length-prefixed JSON frames over asyncio streams.

Each frame = 4-byte little-endian unsigned length N + N bytes of UTF-8 JSON.
Frames above MAX_FRAME_SIZE are refused on both ends so a misbehaving peer
can't make us allocate silly amounts of memory.
"""

import asyncio
import json
import struct
from typing import Any, Dict

from .errors import FrameError

MAX_FRAME_SIZE = 1024 * 1024  # 1 MiB; chat text is tiny
LENGTH_STRUCT = struct.Struct("<I")


def encode_frame(obj: Dict[str, Any]) -> bytes:
    """Compact JSON with its length prefix, ready for writer.write()."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise FrameError(f"frame too large: {len(payload)} > {MAX_FRAME_SIZE}")
    return LENGTH_STRUCT.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one frame.

    Raises:
        asyncio.IncompleteReadError: the peer closed the stream (normal disconnect).
        FrameError: oversized, non-UTF-8 or non-JSON payload.
    """
    (length,) = LENGTH_STRUCT.unpack(await reader.readexactly(LENGTH_STRUCT.size))
    if length > MAX_FRAME_SIZE:
        raise FrameError(f"frame too large: {length} > {MAX_FRAME_SIZE}")
    payload = await reader.readexactly(length)
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Short message; never echo the payload back.
        raise FrameError(f"invalid JSON frame: {exc}") from exc


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    writer.write(encode_frame(obj))
    await writer.drain()
