"""
Configuration for ODX server discovery
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from odx_discovery.protocol.models import ProbeVariant, ScanConfiguration
from odx_discovery.utils.quick_match import QuickMatchCriteria

# Load environment variables
load_dotenv()


def _bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _int_list(value: str):
    return [int(v) for v in value.split(',') if v.strip()]


class Config:
    """Discovery configuration"""

    # Master servers
    MASTER_SERVERS = [h.strip() for h in os.getenv(
        'MASTER_SERVERS', 'master1.odamex.net:15000,master2.odamex.net:15000'
    ).split(',') if h.strip()]
    MASTER_TIMEOUT_MS = int(os.getenv('MASTER_TIMEOUT_MS', '10000'))
    MASTER_REFRESH_MINUTES = float(os.getenv('MASTER_REFRESH_MINUTES', '5'))
    MASTER_MAX_CONCURRENT = int(os.getenv('MASTER_MAX_CONCURRENT', '10'))

    # Game server queries
    QUERY_TIMEOUT_MS = int(os.getenv('QUERY_TIMEOUT_MS', '10000'))

    # Local network discovery
    LOCAL_DISCOVERY_ENABLED = _bool(os.getenv('LOCAL_DISCOVERY_ENABLED', 'false'))
    LOCAL_PORT_START = int(os.getenv('LOCAL_PORT_START', '10666'))
    LOCAL_PORT_END = int(os.getenv('LOCAL_PORT_END', '10675'))
    LOCAL_SCAN_TIMEOUT_MS = int(os.getenv('LOCAL_SCAN_TIMEOUT_MS', '200'))
    LOCAL_REFRESH_SECONDS = int(os.getenv('LOCAL_REFRESH_SECONDS', '60'))
    LOCAL_MAX_CONCURRENT = int(os.getenv('LOCAL_MAX_CONCURRENT', '50'))
    LOCAL_PROBE_VARIANT = os.getenv('LOCAL_PROBE_VARIANT', 'tagged')
    INTERFACE_CACHE_DAYS = float(os.getenv('INTERFACE_CACHE_DAYS', '3'))

    # Custom servers
    CUSTOM_SERVERS_FILE = os.getenv(
        'CUSTOM_SERVERS_FILE', str(Path.home() / '.odx' / 'custom-servers.json')
    )

    # Quick match
    QUICK_MATCH_MAX_PING = int(os.getenv('QUICK_MATCH_MAX_PING', '100'))
    QUICK_MATCH_MIN_PLAYERS = int(os.getenv('QUICK_MATCH_MIN_PLAYERS', '1'))
    QUICK_MATCH_MAX_PLAYERS = int(os.getenv('QUICK_MATCH_MAX_PLAYERS', '32'))
    QUICK_MATCH_AVOID_EMPTY = _bool(os.getenv('QUICK_MATCH_AVOID_EMPTY', 'true'))
    QUICK_MATCH_AVOID_FULL = _bool(os.getenv('QUICK_MATCH_AVOID_FULL', 'true'))
    QUICK_MATCH_GAME_TYPES = os.getenv('QUICK_MATCH_GAME_TYPES', '0,1,2,3,4,5')
    AVAILABLE_GAME_DATA = [g.strip().lower() for g in os.getenv(
        'AVAILABLE_GAME_DATA', ''
    ).split(',') if g.strip()]

    # Status API (read-only state for the UI)
    STATUS_HOST = os.getenv('STATUS_HOST', '127.0.0.1')
    STATUS_PORT = int(os.getenv('STATUS_PORT', '7666'))

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def from_env(cls):
        """Create config from environment"""
        return cls()

    def scan_configuration(self) -> ScanConfiguration:
        """Validated local scan settings"""
        return ScanConfiguration(
            port_range_start=self.LOCAL_PORT_START,
            port_range_end=self.LOCAL_PORT_END,
            timeout_ms=self.LOCAL_SCAN_TIMEOUT_MS,
            max_concurrent=self.LOCAL_MAX_CONCURRENT,
            refresh_interval=self.LOCAL_REFRESH_SECONDS,
            probe_variant=ProbeVariant(self.LOCAL_PROBE_VARIANT),
        ).validate()

    def quick_match_criteria(self) -> QuickMatchCriteria:
        return QuickMatchCriteria(
            max_ping=self.QUICK_MATCH_MAX_PING,
            min_players=self.QUICK_MATCH_MIN_PLAYERS,
            max_players=self.QUICK_MATCH_MAX_PLAYERS,
            avoid_empty=self.QUICK_MATCH_AVOID_EMPTY,
            avoid_full=self.QUICK_MATCH_AVOID_FULL,
            preferred_game_types=_int_list(self.QUICK_MATCH_GAME_TYPES),
        ).validate()

    def __repr__(self):
        return (
            f"<Config masters={','.join(self.MASTER_SERVERS)} "
            f"local={self.LOCAL_DISCOVERY_ENABLED} status={self.STATUS_HOST}:{self.STATUS_PORT}>"
        )


# Singleton instance
config = Config()
