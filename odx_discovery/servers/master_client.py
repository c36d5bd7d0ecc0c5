"""
Master Registry Client

Fetches the list of registered game servers from a master server.

Protocol: UDP
Port: 15000 (default)

Communication Flow:
1. Launcher sends 777123 (u32 LE)
2. Master answers 777123, a u16 count and 6-byte ip/port entries
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from odx_discovery.protocol.errors import QueryError, QueryProtocolError
from odx_discovery.protocol.models import Address
from odx_discovery.protocol.odalpapi_proto import (
    DecodeError, decode_master_response, encode_master_challenge,
)
from odx_discovery.servers.query_client import GameServerQueryClient

logger = logging.getLogger(__name__)

MASTER_PORT = 15000
MASTER_TIMEOUT_MS = 10000


def parse_master_host(host: str) -> Address:
    """'master1.odamex.net' or 'master1.odamex.net:15000' -> Address"""
    host = host.strip()
    if ':' in host:
        name, _, port = host.rpartition(':')
        return Address(name, int(port))
    return Address(host, MASTER_PORT)


@dataclass
class MasterResult:
    """Outcome of a master fetch; error is set when no master answered"""

    addresses: List[Address] = field(default_factory=list)
    error: Optional[str] = None
    host: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MasterRegistryClient(GameServerQueryClient):
    """Queries master servers for the current game server list"""

    def __init__(self, transport=None, timeout_ms: int = MASTER_TIMEOUT_MS):
        super().__init__(transport)
        self.timeout_ms = timeout_ms

    async def query_master(self, host: str) -> List[Address]:
        """
        Query one master server.

        Raises:
            QueryTimeoutError, QueryProtocolError, QueryTransportError
        """
        address = parse_master_host(host)

        def accept(data: bytes) -> Optional[List[Address]]:
            addresses = decode_master_response(data)
            if isinstance(addresses, DecodeError):
                raise QueryProtocolError(
                    f"Invalid master response from {address}: {addresses.value}", address
                )
            return addresses

        addresses, rtt = await self._exchange(
            address, self.timeout_ms, encode_master_challenge(), accept
        )
        logger.info(f"[Master] {address} listed {len(addresses)} server(s) in {rtt}ms")
        return addresses

    async def fetch(self, hosts: Iterable[str]) -> MasterResult:
        """
        Try each master in order and return the first list.

        Never raises for query failures: an unreachable master yields an
        empty list and an error message for display.
        """
        errors = []
        for host in hosts:
            try:
                addresses = await self.query_master(host)
            except QueryError as e:
                logger.warning(f"[Master] {host} failed: {e}")
                errors.append(f"{host}: {e}")
                continue
            return MasterResult(addresses=addresses, host=host)

        if not errors:
            return MasterResult(error="No master servers configured")
        return MasterResult(error='; '.join(errors))
