"""
Data model for ODX server discovery

Plain dataclasses shared by the codec, the query clients, the scanner,
the aggregator and the quick-match ranker.
"""

from dataclasses import dataclass, field, replace, asdict
from enum import Enum, IntEnum
from typing import Optional, List, Iterator, FrozenSet, Union

from odx_discovery.protocol.errors import ConfigurationError


# =============================================================================
# Enums
# =============================================================================

class CvarType(IntEnum):
    """Console variable value types on the wire"""

    NONE = 0
    BOOL = 1
    BYTE = 2
    WORD = 3
    INT = 4
    FLOAT = 5
    STRING = 6


class GameType(IntEnum):
    """Game mode codes reported by sv_gametype"""

    COOPERATIVE = 0
    DEATHMATCH = 1
    TEAM_DEATHMATCH = 2
    CAPTURE_THE_FLAG = 3
    SURVIVAL = 4
    HORDE = 5


TEAM_GAME_TYPES = (GameType.TEAM_DEATHMATCH, GameType.CAPTURE_THE_FLAG)


class ProbeVariant(str, Enum):
    """Packet sent to each host/port during a LAN scan"""

    TAGGED = 'tagged'
    LEGACY = 'legacy'


class ServerSource(str, Enum):
    """Where an aggregated server came from"""

    LOCAL = 'local'
    CUSTOM = 'custom'
    MASTER = 'master'


def game_type_from_code(code: int) -> Union[GameType, int]:
    """Map a raw game type code to GameType, keeping unknown codes as ints"""
    try:
        return GameType(code)
    except ValueError:
        return code


# =============================================================================
# Addresses and server records
# =============================================================================

@dataclass(frozen=True)
class Address:
    """
    Server address.

    Equality is plain (host, port) equality. Hostnames are never resolved
    for comparison, so 'localhost:10666' and '127.0.0.1:10666' differ.
    """

    host: str
    port: int

    def __str__(self):
        return f"{self.host}:{self.port}"

    def to_dict(self) -> dict:
        return {'ip': self.host, 'port': self.port}


@dataclass
class Cvar:
    name: str
    type: CvarType = CvarType.NONE
    value: Union[bool, int, float, str, None] = None


@dataclass
class Team:
    name: str
    color: int
    score: int


@dataclass
class Player:
    name: str
    color: int = 0
    kills: int = 0
    deaths: int = 0
    time: int = 0
    frags: int = 0
    ping: int = 0
    team: int = 0
    spectator: bool = False


@dataclass
class Wad:
    """Loaded data file and its hex hash"""

    name: str
    hash: str = ''


@dataclass
class ServerRecord:
    """
    Full state of one queried server.

    A fresh query replaces the whole record. Use with_ping() to get a copy
    with a measured round-trip time instead of mutating a shared record.
    """

    address: Address
    name: Optional[str] = None
    current_map: Optional[str] = None
    game_type: Union[GameType, int] = GameType.COOPERATIVE
    password_hash: Optional[str] = None
    version_major: Optional[int] = None
    version_minor: Optional[int] = None
    version_patch: Optional[int] = None
    version_protocol: Optional[int] = None
    version_real_protocol: Optional[int] = None
    version_revision: Optional[str] = None
    score_limit: Optional[int] = None
    time_limit: Optional[float] = None
    time_left: Optional[int] = None
    max_clients: Optional[int] = None
    max_players: Optional[int] = None
    lives: Optional[int] = None
    sides: Optional[int] = None
    ping: Optional[int] = None
    wads: List[Wad] = field(default_factory=list)
    patches: List[str] = field(default_factory=list)
    players: List[Player] = field(default_factory=list)
    teams: List[Team] = field(default_factory=list)
    cvars: List[Cvar] = field(default_factory=list)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def active_players(self) -> int:
        """Players that are not spectating"""
        return sum(1 for p in self.players if not p.spectator)

    @property
    def total_clients(self) -> int:
        return len(self.players)

    @property
    def version(self) -> str:
        if self.version_major is None:
            return 'unknown'
        return f"{self.version_major}.{self.version_minor}.{self.version_patch}"

    def with_ping(self, ping: Optional[int]) -> 'ServerRecord':
        return replace(self, ping=ping)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['address'] = self.address.to_dict()
        data['game_type'] = int(self.game_type)
        data['has_password'] = self.has_password
        data.pop('password_hash')
        for cvar in data['cvars']:
            cvar['type'] = int(cvar['type'])
        return data


@dataclass(frozen=True)
class VersionInfo:
    """Answer to the version-only challenge"""

    major: int
    minor: int
    patch: int
    protocol: int


# =============================================================================
# Discovery configuration and inputs
# =============================================================================

@dataclass(frozen=True)
class NetworkInterface:
    name: str
    address: str
    netmask: str
    cidr: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScanConfiguration:
    """
    Local network scan settings.

    Call validate() at the boundary before handing the configuration to
    the scanner.
    """

    port_range_start: int = 10666
    port_range_end: int = 10675
    timeout_ms: int = 200
    max_concurrent: int = 50
    refresh_interval: int = 60
    probe_variant: ProbeVariant = ProbeVariant.TAGGED

    def validate(self) -> 'ScanConfiguration':
        for label, port in (('start', self.port_range_start), ('end', self.port_range_end)):
            if not 1 <= port <= 65535:
                raise ConfigurationError(f"Port range {label} {port} is outside 1-65535")
        if self.port_range_start > self.port_range_end:
            raise ConfigurationError(
                f"Port range start {self.port_range_start} is after end {self.port_range_end}"
            )
        if self.timeout_ms <= 0:
            raise ConfigurationError("Scan timeout must be positive")
        if self.max_concurrent <= 0:
            raise ConfigurationError("Max concurrent probes must be positive")
        if self.refresh_interval <= 0:
            raise ConfigurationError("Refresh interval must be positive")
        if not isinstance(self.probe_variant, ProbeVariant):
            self.probe_variant = ProbeVariant(self.probe_variant)
        return self

    @property
    def ports(self) -> range:
        return range(self.port_range_start, self.port_range_end + 1)


@dataclass
class CustomServerEntry:
    """User-entered address, kept in display order"""

    address: str
    order: int

    def to_dict(self) -> dict:
        return {'address': self.address, 'order': self.order}


# =============================================================================
# Aggregated results
# =============================================================================

@dataclass(frozen=True)
class AggregatedServer:
    """
    One merged server.

    source is where the kept record came from. sources lists every
    source that reported the address.
    """

    record: ServerRecord
    source: ServerSource
    sources: FrozenSet[ServerSource]

    @property
    def address(self) -> Address:
        return self.record.address

    def to_dict(self) -> dict:
        data = self.record.to_dict()
        data['source'] = self.source.value
        data['sources'] = sorted(s.value for s in self.sources)
        return data


@dataclass
class AggregatedServerSet:
    """De-duplicated servers ordered local, then custom, then master"""

    servers: List[AggregatedServer] = field(default_factory=list)

    def __iter__(self) -> Iterator[AggregatedServer]:
        return iter(self.servers)

    def __len__(self):
        return len(self.servers)

    def records(self) -> List[ServerRecord]:
        return [s.record for s in self.servers]

    def addresses(self) -> List[Address]:
        return [s.address for s in self.servers]

    def by_source(self, source: ServerSource) -> List[ServerRecord]:
        return [s.record for s in self.servers if s.source is source]

    def to_dict(self) -> dict:
        return {
            'count': len(self.servers),
            'servers': [s.to_dict() for s in self.servers],
        }
