"""
OdalPapi protocol utilities

Encodes launcher challenges and decodes master/game server replies.
Pure data transformation, no I/O.

Reply layout (game server, all integers little endian):
    [tag word:4][version:4][protocol:4][ptime:4][real protocol:4]
    [revision string] [cvars] [password hash] [map] [time left?]
    [teams?] [patches] [wads] [players]

Master reply:
    [777123:4][count:2] then [ip:4][port:2] per server
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, Union

from odx_discovery.protocol.models import (
    Address, Cvar, CvarType, Player, ProbeVariant, ServerRecord,
    Team, VersionInfo, Wad, TEAM_GAME_TYPES, game_type_from_code,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

TAG_ID = 0xAD0

MASTER_CHALLENGE = 777123
MASTER_RESPONSE = 777123

SERVER_CHALLENGE = 0xAD011002
SERVER_VERSION_CHALLENGE = 0xAD011001
PING_CHALLENGE = 1

# Older servers answer this 4-byte probe
LEGACY_PROBE = bytes([0x00, 0x00, 0x00, 0xAD])

# Launcher reply tag fields
TAG_APPLICATION_SERVER = 3
TAG_QR_SERVER_REPLY = 2
TAG_PACKET_TYPE_REJECTED = 2

MIN_RESPONSE_SIZE = 8
MASTER_HEADER_SIZE = 6
MASTER_ENTRY_SIZE = 6

PROTOCOL_VERSION = 9


class DecodeError(Enum):
    """Why a datagram was rejected. Returned, never raised."""

    TRUNCATED = 'truncated'
    INVALID_TAG = 'invalid_tag'
    BAD_VERSION = 'bad_version'


class PacketTruncated(Exception):
    """Raised by PacketReader when a field runs past the buffer"""


# =============================================================================
# Version arithmetic
# =============================================================================

def version_major(v: int) -> int:
    return v // 256


def version_minor(v: int) -> int:
    return (v % 256) // 10


def version_patch(v: int) -> int:
    return (v % 256) % 10


# Launcher's own packed version (0.9.0)
VERSION = 0 * 256 + PROTOCOL_VERSION * 10


def is_compatible(server_major: int, server_minor: int,
                  client_major: int, client_minor: int) -> bool:
    """Same major and server minor not newer than the client's"""
    return server_major == client_major and server_minor <= client_minor


# =============================================================================
# Encoding
# =============================================================================

def _pack_u32(value: int) -> bytes:
    return struct.pack('<I', value)


def encode_master_challenge() -> bytes:
    return _pack_u32(MASTER_CHALLENGE)


def encode_server_challenge(version_query: bool = False) -> bytes:
    """Full server-info challenge, or the lightweight version-only one"""
    return _pack_u32(SERVER_VERSION_CHALLENGE if version_query else SERVER_CHALLENGE)


def encode_ping_challenge() -> bytes:
    return _pack_u32(PING_CHALLENGE)


def encode_probe(variant: ProbeVariant = ProbeVariant.TAGGED) -> bytes:
    if variant is ProbeVariant.LEGACY:
        return LEGACY_PROBE
    return encode_server_challenge()


# =============================================================================
# Reading
# =============================================================================

class PacketReader:
    """Cursor over a reply buffer"""

    def __init__(self, data: bytes, offset: int = 0):
        self.data = bytes(data)
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def _unpack(self, fmt: str, size: int) -> int:
        if self.remaining < size:
            raise PacketTruncated(f"need {size} bytes at offset {self.offset}")
        value = struct.unpack_from(fmt, self.data, self.offset)[0]
        self.offset += size
        return value

    def read_u8(self) -> int:
        return self._unpack('<B', 1)

    def read_u16(self) -> int:
        return self._unpack('<H', 2)

    def read_u32(self) -> int:
        return self._unpack('<I', 4)

    def read_string(self) -> str:
        """NUL-terminated string"""
        end = self.data.find(b'\x00', self.offset)
        if end < 0:
            raise PacketTruncated(f"unterminated string at offset {self.offset}")
        value = self.data[self.offset:end].decode('utf-8', errors='replace')
        self.offset = end + 1
        return value

    def read_hex_string(self) -> str:
        """u8 length followed by raw bytes, returned as hex"""
        size = self.read_u8()
        if size == 0:
            return ''
        if self.remaining < size:
            raise PacketTruncated(f"need {size} hash bytes at offset {self.offset}")
        value = self.data[self.offset:self.offset + size].hex()
        self.offset += size
        return value


# =============================================================================
# Decoding
# =============================================================================

@dataclass(frozen=True)
class ResponseEnvelope:
    """Tag fields of a validated reply plus the bytes after the tag word"""

    tag_id: int
    application: int
    qr_id: int
    packet_type: int
    body: bytes

    @property
    def is_server_reply(self) -> bool:
        return (self.application == TAG_APPLICATION_SERVER
                and self.qr_id == TAG_QR_SERVER_REPLY
                and self.packet_type != TAG_PACKET_TYPE_REJECTED)


def decode_response(data: bytes) -> Union[ResponseEnvelope, DecodeError]:
    """
    Validate the tag of a game server reply.

    Args:
        data: Raw datagram

    Returns:
        ResponseEnvelope, or DecodeError.TRUNCATED / DecodeError.INVALID_TAG
    """
    if len(data) < MIN_RESPONSE_SIZE:
        return DecodeError.TRUNCATED

    word = struct.unpack_from('<I', data, 0)[0]
    tag_id = (word >> 20) & 0x0FFF
    if tag_id != TAG_ID:
        return DecodeError.INVALID_TAG

    return ResponseEnvelope(
        tag_id=tag_id,
        application=(word >> 16) & 0x0F,
        qr_id=(word >> 12) & 0x0F,
        packet_type=word & 0xFFFF0FFF,
        body=bytes(data[4:]),
    )


def _read_cvar(reader: PacketReader) -> Cvar:
    name = reader.read_string()
    ctype = reader.read_u8()

    if ctype == CvarType.BOOL:
        value = True
    elif ctype == CvarType.BYTE:
        value = reader.read_u8()
    elif ctype == CvarType.WORD:
        value = reader.read_u16()
    elif ctype == CvarType.INT:
        value = reader.read_u32()
    elif ctype == CvarType.FLOAT:
        text = reader.read_string()
        try:
            value = float(text)
        except ValueError:
            value = text
    elif ctype == CvarType.STRING:
        value = reader.read_string()
    else:
        value = None

    try:
        ctype = CvarType(ctype)
    except ValueError:
        ctype = CvarType.NONE
    return Cvar(name=name, type=ctype, value=value)


def _as_int(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_float(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _apply_cvar(server: ServerRecord, cvar: Cvar):
    """Copy well-known cvars onto the record"""
    name = cvar.name
    if name == 'sv_hostname':
        server.name = str(cvar.value) if cvar.value is not None else None
    elif name == 'sv_maxplayers':
        server.max_players = _as_int(cvar.value)
    elif name == 'sv_maxclients':
        server.max_clients = _as_int(cvar.value)
    elif name == 'sv_gametype':
        code = _as_int(cvar.value)
        server.game_type = game_type_from_code(code if code is not None else 0)
    elif name == 'sv_scorelimit':
        server.score_limit = _as_int(cvar.value)
    elif name == 'sv_timelimit':
        server.time_limit = _as_float(cvar.value)
    elif name == 'g_lives':
        server.lives = _as_int(cvar.value)
    elif name == 'g_sides':
        server.sides = _as_int(cvar.value)


def _read_server_info(reader: PacketReader, server: ServerRecord):
    sv_version = reader.read_u32()
    sv_protocol = reader.read_u32()
    if sv_version == 0:
        return DecodeError.BAD_VERSION

    server.version_major = version_major(sv_version)
    server.version_minor = version_minor(sv_version)
    server.version_patch = version_patch(sv_version)
    server.version_protocol = sv_protocol

    reader.read_u32()  # processing time
    server.version_real_protocol = reader.read_u32()
    server.version_revision = reader.read_string()

    for _ in range(reader.read_u8()):
        cvar = _read_cvar(reader)
        _apply_cvar(server, cvar)
        server.cvars.append(cvar)

    server.password_hash = reader.read_hex_string() or None
    server.current_map = reader.read_string()

    if server.time_limit and server.time_limit > 0:
        server.time_left = reader.read_u16()

    team_game = server.game_type in TEAM_GAME_TYPES
    if team_game:
        for _ in range(reader.read_u8()):
            server.teams.append(Team(
                name=reader.read_string(),
                color=reader.read_u32(),
                score=reader.read_u16(),
            ))

    for _ in range(reader.read_u8()):
        server.patches.append(reader.read_string())

    for _ in range(reader.read_u8()):
        server.wads.append(Wad(name=reader.read_string(), hash=reader.read_hex_string()))

    for _ in range(reader.read_u8()):
        player = Player(name=reader.read_string(), color=reader.read_u32())
        if team_game:
            player.team = reader.read_u8()
        player.ping = reader.read_u16()
        player.time = reader.read_u16()
        player.spectator = reader.read_u8() > 0
        player.frags = reader.read_u16()
        player.kills = reader.read_u16()
        player.deaths = reader.read_u16()
        server.players.append(player)

    return None


def decode_server_info(data: bytes, address: Address) -> Union[ServerRecord, DecodeError]:
    """
    Decode a full server-info reply.

    Any short or malformed field rejects the whole reply; a partially
    filled record is never returned.

    Args:
        data: Raw datagram
        address: Address the reply came from

    Returns:
        ServerRecord (without ping) or DecodeError
    """
    envelope = decode_response(data)
    if isinstance(envelope, DecodeError):
        return envelope
    if not envelope.is_server_reply:
        return DecodeError.INVALID_TAG

    server = ServerRecord(address=address)
    try:
        error = _read_server_info(PacketReader(envelope.body), server)
    except PacketTruncated as e:
        logger.debug(f"[Codec] Truncated reply from {address}: {e}")
        return DecodeError.TRUNCATED
    if error is not None:
        return error
    return server


def decode_version_info(data: bytes) -> Union[VersionInfo, DecodeError]:
    """Decode a reply to the version-only challenge"""
    envelope = decode_response(data)
    if isinstance(envelope, DecodeError):
        return envelope

    reader = PacketReader(envelope.body)
    try:
        sv_version = reader.read_u32()
        sv_protocol = reader.read_u32()
    except PacketTruncated:
        return DecodeError.TRUNCATED
    if sv_version == 0:
        return DecodeError.BAD_VERSION

    return VersionInfo(
        major=version_major(sv_version),
        minor=version_minor(sv_version),
        patch=version_patch(sv_version),
        protocol=sv_protocol,
    )


def decode_master_response(data: bytes) -> Union[List[Address], DecodeError]:
    """
    Decode the master server address list.

    The advertised count is informational; every whole 6-byte entry in
    the datagram is returned.
    """
    if len(data) < MASTER_HEADER_SIZE:
        return DecodeError.TRUNCATED

    magic, count = struct.unpack_from('<IH', data, 0)
    if magic != MASTER_RESPONSE:
        return DecodeError.INVALID_TAG

    addresses = []
    offset = MASTER_HEADER_SIZE
    while offset + MASTER_ENTRY_SIZE <= len(data):
        ip = '.'.join(str(b) for b in data[offset:offset + 4])
        port = struct.unpack_from('<H', data, offset + 4)[0]
        addresses.append(Address(ip, port))
        offset += MASTER_ENTRY_SIZE

    if count != len(addresses):
        logger.debug(f"[Codec] Master advertised {count} servers, decoded {len(addresses)}")

    return addresses
