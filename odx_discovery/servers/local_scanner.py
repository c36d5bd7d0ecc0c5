"""
Local Network Scanner

Finds game servers on the LAN that may not be registered with the master.

Flow:
1. Enumerate private interfaces and expand them into candidate hosts
2. Cross hosts with the configured port range
3. Probe every pair through a pool of max_concurrent workers
4. Re-query responders that only sent a bare reply
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from odx_discovery.protocol.errors import QueryError, ScanInProgressError
from odx_discovery.protocol.models import Address, NetworkInterface, ScanConfiguration, ServerRecord
from odx_discovery.servers.query_client import GameServerQueryClient
from odx_discovery.utils.subnets import InterfaceCache, candidate_hosts

logger = logging.getLogger(__name__)

FOLLOW_UP_TIMEOUT_MS = 2000


class LocalNetworkScanner:
    """Bounded-concurrency LAN probe"""

    def __init__(self, client: GameServerQueryClient = None,
                 interface_source: Callable[[], List[NetworkInterface]] = None,
                 follow_up_timeout_ms: int = FOLLOW_UP_TIMEOUT_MS):
        """
        Args:
            client: Query client used for probes
            interface_source: Callable returning the interfaces to scan
            follow_up_timeout_ms: Timeout for the full query sent to bare responders
        """
        self.client = client or GameServerQueryClient()
        self.interface_source = interface_source or InterfaceCache().get
        self.follow_up_timeout_ms = follow_up_timeout_ms

        self._scanning = False
        self._pool: Optional[asyncio.Future] = None
        self._cancel_requested = False

        self.last_scan_time: Optional[datetime] = None
        self.detected_networks: List[NetworkInterface] = []
        self.last_probe_count = 0

    @property
    def scanning(self) -> bool:
        return self._scanning

    def status(self) -> dict:
        return {
            'scanning': self._scanning,
            'last_scan_time': self.last_scan_time.isoformat() if self.last_scan_time else None,
            'detected_networks': [n.to_dict() for n in self.detected_networks],
            'last_probe_count': self.last_probe_count,
        }

    def cancel(self):
        """Abort the running fan-out; results found so far are returned"""
        if self._pool is not None and not self._pool.done():
            self._cancel_requested = True
            self._pool.cancel()

    # =========================================================================
    # Scanning
    # =========================================================================

    async def scan(self, config: ScanConfiguration) -> List[ServerRecord]:
        """
        Probe every candidate host and port.

        Raises:
            ScanInProgressError: A scan is already running on this scanner
            ConfigurationError: The configuration is invalid
        """
        if self._scanning:
            raise ScanInProgressError("Scan already in progress")

        config.validate()
        self._scanning = True
        self._cancel_requested = False
        try:
            return await self._scan(config)
        finally:
            self._scanning = False
            self._pool = None

    async def _scan(self, config: ScanConfiguration) -> List[ServerRecord]:
        networks = self.interface_source()
        self.detected_networks = list(networks)
        if not networks:
            logger.info("[Scan] No private networks detected, nothing to scan")
            self.last_probe_count = 0
            self.last_scan_time = datetime.now()
            return []

        hosts = candidate_hosts(networks)
        targets = [Address(host, port) for host in hosts for port in config.ports]
        self.last_probe_count = len(targets)
        if not targets:
            self.last_scan_time = datetime.now()
            return []

        logger.info(
            f"[Scan] Scanning {len(hosts)} IPs on {len(config.ports)} port(s) "
            f"({config.port_range_start}-{config.port_range_end}), "
            f"timeout {config.timeout_ms}ms, concurrency {config.max_concurrent}"
        )

        results: List[Optional[ServerRecord]] = [None] * len(targets)
        queue = asyncio.Queue()
        for index, address in enumerate(targets):
            queue.put_nowait((index, address))

        async def worker():
            while True:
                try:
                    index, address = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await self._probe(address, config)

        workers = min(config.max_concurrent, len(targets))
        self._pool = asyncio.gather(*(worker() for _ in range(workers)))
        try:
            await self._pool
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            logger.info("[Scan] Scan cancelled")

        servers = [r for r in results if r is not None]
        self.last_scan_time = datetime.now()
        logger.info(
            f"[Scan] Scan complete - probed {len(targets)} combinations, "
            f"found {len(servers)} server(s)"
        )
        return servers

    async def _probe(self, address: Address, config: ScanConfiguration) -> Optional[ServerRecord]:
        try:
            record = await self.client.probe(address, config.timeout_ms, config.probe_variant)
        except QueryError as e:
            logger.debug(f"[Scan] No answer from {address}: {e.kind}")
            return None

        logger.info(f"[Scan] Found server at {address} ({record.ping}ms)")
        if record.version_major is not None:
            return record

        try:
            return await self.client.query(address, self.follow_up_timeout_ms)
        except QueryError as e:
            logger.debug(f"[Scan] Full query of {address} failed, keeping basic info: {e}")
            return record
