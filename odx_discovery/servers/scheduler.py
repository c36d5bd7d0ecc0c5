"""
Refresh Scheduler

Keeps the aggregated server list fresh.

Timers:
- master: master list + custom servers, every MASTER_REFRESH_MINUTES
- local:  LAN scan, every LOCAL_REFRESH_SECONDS (only when enabled)

A refresh that is already running is never stacked. A forced refresh
cancels the running one, runs immediately and restarts that timer.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from odx_discovery.protocol.errors import ScanInProgressError
from odx_discovery.protocol.models import Address, AggregatedServerSet
from odx_discovery.servers.aggregator import ServerAggregator, merge
from odx_discovery.servers.custom_servers import CustomServerRegistry
from odx_discovery.servers.local_scanner import LocalNetworkScanner
from odx_discovery.servers.master_client import MasterRegistryClient, MasterResult
from odx_discovery.servers.query_client import GameServerQueryClient
from odx_discovery.utils.subnets import InterfaceCache

logger = logging.getLogger(__name__)

MASTER = 'master'
LOCAL = 'local'

NO_VALID_SERVERS = 'No valid servers found. All servers timed out or returned invalid responses.'


class RefreshScheduler:
    """Drives periodic master and LAN refreshes"""

    def __init__(self, config, client: GameServerQueryClient = None,
                 master_client: MasterRegistryClient = None,
                 aggregator: ServerAggregator = None,
                 scanner: LocalNetworkScanner = None,
                 custom_registry: CustomServerRegistry = None):
        self.config = config
        self.scan_config = config.scan_configuration()

        client = client or GameServerQueryClient()
        self.master_client = master_client or MasterRegistryClient(
            client.transport, config.MASTER_TIMEOUT_MS
        )
        self.aggregator = aggregator or ServerAggregator(
            client, config.QUERY_TIMEOUT_MS, config.MASTER_MAX_CONCURRENT
        )
        self.interface_cache = InterfaceCache(config.INTERFACE_CACHE_DAYS * 24 * 60 * 60)
        self.scanner = scanner or LocalNetworkScanner(client, self.interface_cache.get)
        self.custom_registry = custom_registry if custom_registry is not None else CustomServerRegistry()

        self.local_enabled = config.LOCAL_DISCOVERY_ENABLED

        # Observable state
        self.servers = AggregatedServerSet()
        self.local_servers = []
        self.error: Optional[str] = None
        self.last_updated: Optional[datetime] = None
        self.master_status = {
            'available': False,
            'host': None,
            'last_checked': None,
            'last_error': None,
        }

        self._custom_results = []
        self._master_results = []
        self._player_snapshot: Dict[str, int] = {}

        self._runs: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._force_locks: Dict[str, asyncio.Lock] = {}
        self._master_result: Optional[MasterResult] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _interval(self, name: str) -> float:
        if name == MASTER:
            return self.config.MASTER_REFRESH_MINUTES * 60
        return self.scan_config.refresh_interval

    def _refresher(self, name: str) -> Callable[[], Awaitable]:
        return self._refresh_master if name == MASTER else self._refresh_local

    async def start(self):
        """Run the first refreshes and start both timers"""
        logger.info(
            f"[Refresh] Starting - master every {self._interval(MASTER):.0f}s, "
            f"local {'every %ds' % self._interval(LOCAL) if self.local_enabled else 'disabled'}"
        )
        self._start_timer(MASTER, run_first=True)
        if self.local_enabled:
            self._start_timer(LOCAL, run_first=True)

    async def stop(self):
        """Cancel timers and any running refresh"""
        tasks = list(self._timers.values()) + list(self._runs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        self._timers.clear()
        self._runs.clear()
        logger.info("[Refresh] Stopped")

    def set_local_enabled(self, enabled: bool):
        self.local_enabled = enabled
        if enabled and LOCAL not in self._timers:
            self._start_timer(LOCAL, run_first=True)
        elif not enabled:
            for task in (self._timers.pop(LOCAL, None), self._runs.pop(LOCAL, None)):
                if task:
                    task.cancel()
            self.local_servers = []
            self._publish(merge([], self._custom_results, self._master_results))

    def _start_timer(self, name: str, run_first: bool = False):
        previous = self._timers.get(name)
        if previous is not None:
            previous.cancel()
        self._timers[name] = asyncio.create_task(self._timer(name, run_first))

    async def _timer(self, name: str, run_first: bool):
        if run_first:
            await self._run(name)
        while True:
            await asyncio.sleep(self._interval(name))
            await self._run(name)

    async def _run(self, name: str):
        """Run one refresh unless one is already in flight"""
        running = self._runs.get(name)
        if running is not None and not running.done():
            logger.info(f"[Refresh] {name} refresh already in progress, skipping")
            return
        task = asyncio.create_task(self._refresher(name)())
        self._runs[name] = task
        await self._await_run(name, task)

    async def _await_run(self, name: str, task: asyncio.Task):
        # A superseded run is cancelled; its waiters just return
        await asyncio.wait([task])
        if task.cancelled():
            logger.info(f"[Refresh] {name} refresh cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Refresh] {name} refresh failed: {error}", exc_info=error)

    async def refresh(self, name: str, force: bool = False):
        """
        Refresh now.

        Args:
            name: 'master' or 'local'
            force: Cancel a running refresh and restart the timer
        """
        if name not in (MASTER, LOCAL):
            raise ValueError(f"Unknown refresh target: {name}")

        if not force:
            await self._run(name)
            return

        # One forced restart at a time per target
        lock = self._force_locks.setdefault(name, asyncio.Lock())
        async with lock:
            stale = [t for t in (self._timers.pop(name, None), self._runs.get(name)) if t]
            for task in stale:
                task.cancel()
            if stale:
                await asyncio.wait(stale)

            task = asyncio.create_task(self._refresher(name)())
            self._runs[name] = task
            if name == MASTER or self.local_enabled:
                self._start_timer(name)
        await self._await_run(name, task)

    async def refresh_master(self, force: bool = False):
        await self.refresh(MASTER, force)

    async def refresh_local(self, force: bool = False):
        await self.refresh(LOCAL, force)

    # =========================================================================
    # Refresh bodies
    # =========================================================================

    async def _fetch_master(self) -> List[Address]:
        result = await self.master_client.fetch(self.config.MASTER_SERVERS)
        self._master_result = result

        self.master_status = {
            'available': result.ok,
            'host': result.host,
            'last_checked': datetime.now().isoformat(),
            'last_error': result.error,
        }
        if not result.ok:
            logger.error(f"[Refresh] Master servers unreachable: {result.error}")
        return result.addresses

    async def _refresh_master(self):
        # Custom queries go out while the master list is still being fetched
        aggregated = await self.aggregator.aggregate(
            self.local_servers, self.custom_registry.entries, self._fetch_master()
        )
        result = self._master_result
        self._custom_results = self.aggregator.last_custom_results
        self._master_results = self.aggregator.last_master_results

        if not result.ok:
            self.error = result.error
        elif self.aggregator.last_status.all_failed:
            self.error = NO_VALID_SERVERS
        else:
            self.error = None

        self._publish(aggregated)

    async def _refresh_local(self):
        try:
            self.local_servers = await self.scanner.scan(self.scan_config)
        except ScanInProgressError:
            logger.info("[Refresh] Scan already in progress, skipping")
            return
        self._publish(merge(self.local_servers, self._custom_results, self._master_results))

    def _publish(self, aggregated: AggregatedServerSet):
        self._track_activity(aggregated)
        self.servers = aggregated
        self.last_updated = datetime.now()

    def _track_activity(self, aggregated: AggregatedServerSet):
        """Log servers that appeared or whose player count changed"""
        snapshot = {}
        for record in aggregated.records():
            key = str(record.address)
            current = record.total_clients
            previous = self._player_snapshot.get(key)
            snapshot[key] = current

            if previous is None:
                if current > 0:
                    logger.info(f"[Refresh] New server: {record.name} ({current} players)")
            elif previous != current:
                change = current - previous
                action = 'joined' if change > 0 else 'left'
                logger.info(f"[Refresh] {record.name}: {abs(change)} player(s) {action}")

        self._player_snapshot = snapshot

    # =========================================================================
    # Observable state
    # =========================================================================

    def snapshot(self) -> dict:
        return {
            'servers': self.servers.to_dict(),
            'master': dict(self.master_status),
            'local': {
                'enabled': self.local_enabled,
                **self.scanner.status(),
            },
            'refreshing': {name: not task.done() for name, task in self._runs.items()},
            'error': self.error,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }
