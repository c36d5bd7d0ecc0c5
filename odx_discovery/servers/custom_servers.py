"""
Custom Server Registry

User-entered server addresses, kept in display order and persisted as
JSON. Order matters for display only, not for query priority.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from odx_discovery.protocol.errors import ConfigurationError, QueryError
from odx_discovery.protocol.models import Address, CustomServerEntry, ServerRecord
from odx_discovery.servers.query_client import GameServerQueryClient
from odx_discovery.utils.addresses import parse_custom_server_address, validate_custom_server_address

logger = logging.getLogger(__name__)


class CustomServerRegistry:
    """Ordered list of custom server addresses"""

    def __init__(self, entries: Iterable[CustomServerEntry] = ()):
        self._entries: List[CustomServerEntry] = sorted(entries, key=lambda e: e.order)

    @property
    def entries(self) -> List[CustomServerEntry]:
        return list(self._entries)

    def __len__(self):
        return len(self._entries)

    def addresses(self) -> List[Address]:
        """Parsed addresses in display order; invalid entries are skipped"""
        parsed = []
        for entry in self._entries:
            address = parse_custom_server_address(entry.address)
            if address is None:
                logger.warning(f"[Custom] Failed to parse custom server address: {entry.address}")
                continue
            parsed.append(address)
        return parsed

    def _find(self, address: str) -> Optional[int]:
        for i, entry in enumerate(self._entries):
            if entry.address == address:
                return i
        return None

    # =========================================================================
    # Editing
    # =========================================================================

    def add(self, address: str) -> CustomServerEntry:
        """
        Append an address.

        Raises:
            ConfigurationError: Invalid or duplicate address
        """
        address = address.strip()
        error = validate_custom_server_address(address)
        if error:
            raise ConfigurationError(error)
        if self._find(address) is not None:
            raise ConfigurationError(f"{address} is already in the list")

        order = max((e.order for e in self._entries), default=-1) + 1
        entry = CustomServerEntry(address=address, order=order)
        self._entries.append(entry)
        return entry

    def remove(self, address: str) -> bool:
        index = self._find(address)
        if index is None:
            return False
        del self._entries[index]
        return True

    def update(self, old_address: str, new_address: str) -> bool:
        index = self._find(old_address)
        if index is None:
            return False
        new_address = new_address.strip()
        error = validate_custom_server_address(new_address)
        if error:
            raise ConfigurationError(error)
        self._entries[index] = CustomServerEntry(new_address, self._entries[index].order)
        return True

    def reorder(self, addresses: List[str]):
        """Put entries in the given order and renumber them 0..n-1"""
        by_address = {e.address: e for e in self._entries}
        if sorted(addresses) != sorted(by_address):
            raise ConfigurationError("Reorder must list every custom server exactly once")
        self._entries = [CustomServerEntry(a, i) for i, a in enumerate(addresses)]

    # =========================================================================
    # Persistence
    # =========================================================================

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'CustomServerRegistry':
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
            entries = [CustomServerEntry(str(d['address']), int(d['order'])) for d in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"[Custom] Failed to load custom servers from {path}: {e}")
            return cls()
        return cls(entries)

    def save(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps([e.to_dict() for e in self._entries], indent=2),
            encoding='utf-8',
        )

    # =========================================================================
    # Querying
    # =========================================================================

    async def query_all(self, client: GameServerQueryClient,
                        timeout_ms: int) -> List[ServerRecord]:
        """Query every entry at once; failures are dropped"""
        addresses = self.addresses()

        async def query_one(address: Address) -> Optional[ServerRecord]:
            try:
                return await client.query(address, timeout_ms)
            except QueryError as e:
                logger.debug(f"[Custom] Failed to query custom server {address}: {e}")
                return None

        results = await asyncio.gather(*(query_one(a) for a in addresses))
        return [r for r in results if r is not None]
