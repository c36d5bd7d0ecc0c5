"""
Quick-Match Ranker

Picks one server to join without manual browsing. Servers are filtered
by the user's criteria and the survivors scored:

    min(active players, 8) * 10 - ping / 10

The highest score wins; on a tie the server seen first wins.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from odx_discovery.protocol.errors import ConfigurationError
from odx_discovery.protocol.models import GameType, ServerRecord
from odx_discovery.protocol.odalpapi_proto import VERSION, is_compatible, version_major, version_minor

logger = logging.getLogger(__name__)

MISSING_PING_PENALTY = 999
PLAYER_SCORE_CAP = 8

DEFAULT_GAME_TYPES = (
    GameType.DEATHMATCH,
    GameType.TEAM_DEATHMATCH,
    GameType.CAPTURE_THE_FLAG,
    GameType.COOPERATIVE,
    GameType.SURVIVAL,
    GameType.HORDE,
)


@dataclass
class QuickMatchCriteria:
    max_ping: int = 100
    min_players: int = 1
    max_players: int = 32
    avoid_empty: bool = True
    avoid_full: bool = True
    preferred_game_types: Sequence[int] = field(default_factory=lambda: list(DEFAULT_GAME_TYPES))
    client_version: Optional[Tuple[int, int]] = (version_major(VERSION), version_minor(VERSION))

    def validate(self) -> 'QuickMatchCriteria':
        if self.max_ping <= 0:
            raise ConfigurationError("Max ping must be positive")
        if self.min_players < 0 or self.max_players < self.min_players:
            raise ConfigurationError(
                f"Player bounds {self.min_players}-{self.max_players} are invalid"
            )
        return self


@dataclass
class QuickMatchResult:
    server: Optional[ServerRecord]
    reason: Optional[str] = None


def required_iwad(server: ServerRecord) -> Optional[str]:
    """Base game data name a server needs, e.g. 'doom2'"""
    for wad in server.wads:
        name = wad.name.lower()
        if 'odamex' not in name:
            return name.replace('.wad', '')
    return None


def _rejection(server: ServerRecord, criteria: QuickMatchCriteria,
               available_game_data: Set[str]) -> Optional[str]:
    """Why a server is excluded, or None if it is a candidate"""
    if server.address is None:
        return 'address'

    total = server.total_clients
    active = server.active_players

    if criteria.avoid_empty and total == 0:
        return 'empty'
    if server.max_clients and total >= server.max_clients:
        return 'full'
    if criteria.avoid_full and server.max_players and active >= server.max_players:
        return 'full'
    if active < criteria.min_players or active > criteria.max_players:
        return 'players'

    if criteria.client_version and server.version_major is not None:
        client_major, client_minor = criteria.client_version
        if not is_compatible(server.version_major, server.version_minor,
                             client_major, client_minor):
            return 'version'

    if criteria.preferred_game_types and server.game_type not in criteria.preferred_game_types:
        return 'game_type'

    iwad = required_iwad(server)
    if iwad is not None and iwad not in available_game_data:
        return 'iwad'

    if server.has_password:
        return 'password'

    if server.ping is not None and server.ping > criteria.max_ping:
        return 'ping'

    return None


def score(server: ServerRecord) -> float:
    ping = server.ping if server.ping is not None else MISSING_PING_PENALTY
    return min(server.active_players, PLAYER_SCORE_CAP) * 10 - ping / 10


def filter_candidates(servers: Iterable[ServerRecord], criteria: QuickMatchCriteria,
                      available_game_data: Iterable[str] = ()) -> List[ServerRecord]:
    available = {name.lower() for name in available_game_data}
    candidates = []
    for server in servers:
        reason = _rejection(server, criteria, available)
        if reason is None:
            candidates.append(server)
        else:
            logger.debug(f"[QuickMatch] Skipping {server.address}: {reason}")
    return candidates


def rank(servers: Iterable[ServerRecord], criteria: QuickMatchCriteria,
         available_game_data: Iterable[str] = ()) -> Optional[ServerRecord]:
    """
    Best server for the criteria, or None.

    Args:
        servers: Aggregated servers in display order
        criteria: User's quick-match criteria
        available_game_data: Game data names the user has installed

    Returns:
        Highest scoring candidate, first-seen on ties
    """
    best = None
    best_score = None
    for server in filter_candidates(servers, criteria, available_game_data):
        server_score = score(server)
        if best_score is None or server_score > best_score:
            best, best_score = server, server_score
    return best


def no_match_reason(servers: Sequence[ServerRecord], criteria: QuickMatchCriteria,
                    available_game_data: Set[str]) -> str:
    """Most likely reason nothing matched, for display"""
    if not servers:
        return 'No servers are currently available.'

    if not any(s.players for s in servers):
        return 'No servers have active players right now.'

    if not any(required_iwad(s) in available_game_data for s in servers if required_iwad(s)):
        return 'No servers match your installed IWADs.'

    if all(s.has_password for s in servers):
        return 'All active servers are password-protected.'

    if not any(s.ping is None or s.ping <= criteria.max_ping for s in servers):
        return f'No servers with ping under {criteria.max_ping}ms.'

    return 'No servers match your criteria. Try browsing all servers.'


def find_best_match(servers: Iterable[ServerRecord], criteria: QuickMatchCriteria,
                    available_game_data: Iterable[str] = ()) -> QuickMatchResult:
    servers = list(servers)
    available = {name.lower() for name in available_game_data}
    server = rank(servers, criteria, available)
    if server is not None:
        logger.info(f"[QuickMatch] Best match: {server.name} at {server.address}")
        return QuickMatchResult(server=server)
    return QuickMatchResult(server=None, reason=no_match_reason(servers, criteria, available))
