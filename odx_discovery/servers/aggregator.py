"""
Server Aggregator

Merges local scan, custom and master-derived results into one list.

Ordering: local servers first, then custom, then master. Each address
appears once. A custom server that the master also lists is shown as a
master server; anything found on the LAN is shown as local.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Dict, Iterable, List, Optional, Set, Tuple, Union

from odx_discovery.protocol.errors import QueryError
from odx_discovery.protocol.models import (
    Address, AggregatedServer, AggregatedServerSet, CustomServerEntry, ServerRecord, ServerSource,
)
from odx_discovery.servers.custom_servers import CustomServerRegistry
from odx_discovery.servers.query_client import DEFAULT_TIMEOUT_MS, GameServerQueryClient

logger = logging.getLogger(__name__)

MASTER_MAX_CONCURRENT = 10


@dataclass
class AggregationStatus:
    queried: int = 0
    answered: int = 0

    @property
    def all_failed(self) -> bool:
        return self.queried > 0 and self.answered == 0


def merge(local: Iterable[ServerRecord], custom: Iterable[ServerRecord],
          master: Iterable[ServerRecord]) -> AggregatedServerSet:
    """
    Ordered merge with a seen-address filter.

    Args:
        local: Records from the LAN scan
        custom: Records from custom entries
        master: Records queried from the master list

    Returns:
        AggregatedServerSet with local, then custom, then master records
    """
    local, custom, master = list(local), list(custom), list(master)

    sources: Dict[Address, Set[ServerSource]] = {}
    for source, records in ((ServerSource.LOCAL, local),
                            (ServerSource.CUSTOM, custom),
                            (ServerSource.MASTER, master)):
        for record in records:
            sources.setdefault(record.address, set()).add(source)

    master_addresses = {r.address for r in master}
    seen: Set[Address] = set()
    kept: List[Tuple[ServerRecord, ServerSource]] = []

    for record in local:
        if record.address not in seen:
            seen.add(record.address)
            kept.append((record, ServerSource.LOCAL))

    for record in custom:
        if record.address in seen or record.address in master_addresses:
            continue
        seen.add(record.address)
        kept.append((record, ServerSource.CUSTOM))

    for record in master:
        if record.address not in seen:
            seen.add(record.address)
            kept.append((record, ServerSource.MASTER))

    return AggregatedServerSet([
        AggregatedServer(record=r, source=source, sources=frozenset(sources[r.address]))
        for r, source in kept
    ])


class ServerAggregator:
    """Queries custom and master-listed servers and merges all sources"""

    def __init__(self, client: GameServerQueryClient = None,
                 timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 master_max_concurrent: int = MASTER_MAX_CONCURRENT):
        self.client = client or GameServerQueryClient()
        self.timeout_ms = timeout_ms
        self.master_max_concurrent = master_max_concurrent
        self.last_status = AggregationStatus()
        self.last_custom_results: List[ServerRecord] = []
        self.last_master_results: List[ServerRecord] = []

    async def _query(self, address: Address,
                     semaphore: Optional[asyncio.Semaphore] = None) -> Optional[ServerRecord]:
        try:
            if semaphore is None:
                return await self.client.query(address, self.timeout_ms)
            async with semaphore:
                return await self.client.query(address, self.timeout_ms)
        except QueryError as e:
            logger.debug(f"[Aggregate] Failed to query {address}: {e}")
            return None

    async def aggregate(self, local: Iterable[ServerRecord],
                        custom: Iterable[CustomServerEntry],
                        master: Union[Iterable[Address], Awaitable[Iterable[Address]]]
                        ) -> AggregatedServerSet:
        """
        Query custom entries and master-listed servers, then merge.

        Custom queries are started first, so a slow master list never
        delays them.

        Args:
            local: Records from the most recent LAN scan
            custom: User-entered custom entries
            master: Addresses returned by the master server, or an
                awaitable that fetches them

        Returns:
            AggregatedServerSet
        """
        local = list(local)
        custom_addresses = CustomServerRegistry(custom).addresses()
        custom_tasks = [asyncio.ensure_future(self._query(a)) for a in custom_addresses]

        try:
            if inspect.isawaitable(master):
                master = await master
            master_addresses = list(dict.fromkeys(master))

            semaphore = asyncio.Semaphore(self.master_max_concurrent)
            master_found = await asyncio.gather(
                *(self._query(a, semaphore) for a in master_addresses)
            )
            custom_found = await asyncio.gather(*custom_tasks)
        finally:
            for task in custom_tasks:
                task.cancel()

        custom_results = [r for r in custom_found if r is not None]
        master_results = [r for r in master_found if r is not None]
        self.last_custom_results = custom_results
        self.last_master_results = master_results

        self.last_status = AggregationStatus(
            queried=len(custom_tasks) + len(master_addresses),
            answered=len(custom_results) + len(master_results),
        )

        aggregated = merge(local, custom_results, master_results)
        logger.info(
            f"[Aggregate] {len(aggregated)} server(s): "
            f"{len(aggregated.by_source(ServerSource.LOCAL))} local, "
            f"{len(aggregated.by_source(ServerSource.CUSTOM))} custom, "
            f"{len(aggregated.by_source(ServerSource.MASTER))} master "
            f"({self.last_status.answered}/{self.last_status.queried} answered)"
        )
        return aggregated
