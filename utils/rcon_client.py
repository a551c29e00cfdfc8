# utils/rcon_client.py
"""Source/Minecraft RCON over a plain asyncio stream.

Packet layout (all ints little-endian int32)::

    [length][request id][type][body ...][0x00][0x00]

``length`` counts everything after itself. One connection per call: connect,
authenticate, send one command, read one reply, close.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import struct
from dataclasses import dataclass

from exceptions import RconAuthFailed, RconConnectionFailed, RconError

log = logging.getLogger(__name__)

SERVERDATA_AUTH = 3
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_RESPONSE_VALUE = 0

AUTH_REQUEST_ID = 1
COMMAND_REQUEST_ID = 2
AUTH_REJECTED_ID = -1

_HEADER = struct.Struct("<iii")
_LENGTH = struct.Struct("<i")
_MIN_LENGTH = 10            # id + type + two NULs
_MAX_LENGTH = 4096 + 10     # largest single reply vanilla servers send

DEFAULT_TIMEOUT = 5.0


@dataclass(frozen=True)
class RconPacket:
    request_id: int
    packet_type: int
    body: str = ""


@dataclass(frozen=True)
class RconResult:
    success: bool
    response: str | None = None
    error: str | None = None


def encode_packet(packet: RconPacket) -> bytes:
    body = packet.body.encode("utf-8")
    return _HEADER.pack(len(body) + _MIN_LENGTH, packet.request_id, packet.packet_type) + body + b"\x00\x00"


def decode_packet(data: bytes) -> RconPacket | None:
    """Decode one complete packet, or None if ``data`` is short or malformed."""
    if len(data) < _LENGTH.size + _MIN_LENGTH:
        return None
    (length,) = _LENGTH.unpack_from(data, 0)
    if length < _MIN_LENGTH or len(data) < _LENGTH.size + length:
        return None
    _, request_id, packet_type = _HEADER.unpack_from(data, 0)
    body = data[_HEADER.size:_LENGTH.size + length - 2]
    return RconPacket(request_id, packet_type, body.decode("utf-8", errors="replace"))


async def _read_packet(reader: asyncio.StreamReader, timeout: float) -> RconPacket | None:
    """Read one packet; None means the server said nothing before the timeout."""
    try:
        head = await asyncio.wait_for(reader.readexactly(_LENGTH.size), timeout=timeout)
        (length,) = _LENGTH.unpack(head)
        if length < _MIN_LENGTH or length > _MAX_LENGTH:
            raise RconConnectionFailed(f"malformed packet length {length}")
        rest = await asyncio.wait_for(reader.readexactly(length), timeout=timeout)
    except asyncio.TimeoutError:
        return None
    except asyncio.IncompleteReadError:
        # peer closed mid-read: same as silence
        return None
    return decode_packet(head + rest)


class RconClient:
    """Single best-effort round trip; retries are the caller's business."""

    def __init__(self, host: str, port: int, password: str, timeout: float = DEFAULT_TIMEOUT):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout

    async def execute(self, command: str) -> str:
        log.info("[rcon] %s:%s → %s", self.host, self.port, command)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise RconConnectionFailed(f"connect to {self.host}:{self.port} failed: {e or type(e).__name__}") from e

        try:
            await self._send(writer, RconPacket(AUTH_REQUEST_ID, SERVERDATA_AUTH, self.password))
            await self._await_auth(reader)

            await self._send(writer, RconPacket(COMMAND_REQUEST_ID, SERVERDATA_EXECCOMMAND, command))
            reply = await _read_packet(reader, self.timeout)
            # some commands produce no output at all
            return reply.body if reply else ""
        except RconError:
            raise
        except OSError as e:
            raise RconConnectionFailed(str(e) or type(e).__name__) from e
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _send(self, writer: asyncio.StreamWriter, packet: RconPacket) -> None:
        writer.write(encode_packet(packet))
        await writer.drain()

    async def _await_auth(self, reader: asyncio.StreamReader) -> None:
        packet = await _read_packet(reader, self.timeout)
        # Source servers send an empty RESPONSE_VALUE ahead of the auth reply
        if packet and packet.packet_type == SERVERDATA_RESPONSE_VALUE and packet.request_id != AUTH_REJECTED_ID:
            packet = await _read_packet(reader, self.timeout)
        if packet is None:
            raise RconAuthFailed("no auth response from server")
        if packet.request_id == AUTH_REJECTED_ID:
            raise RconAuthFailed("RCON authentication failed")


# ---- public API ----------------------------------------------------

async def send_rcon_command(
    host: str,
    port: int,
    password: str,
    command: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> RconResult:
    try:
        out = await RconClient(host, port, password, timeout=timeout).execute(command)
    except RconAuthFailed as e:
        log.warning("[rcon] auth failed at %s:%s: %s", host, port, e)
        return RconResult(success=False, error=f"RCON auth failed: {e}")
    except RconError as e:
        log.warning("[rcon] connection failed at %s:%s: %s", host, port, e)
        return RconResult(success=False, error=f"RCON connection failed: {e}")
    return RconResult(success=True, response=out)
