"""
UDP transport for launcher queries

Each query opens its own connected datagram endpoint and closes it when
the `async with` block exits, on success, timeout or error alike.

Tests substitute any object with the same open() shape.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Tuple

from odx_discovery.protocol.errors import QueryTransportError
from odx_discovery.protocol.models import Address

logger = logging.getLogger(__name__)


class DatagramEndpoint:
    """
    One UDP socket bound to an ephemeral port and connected to one peer.

    Received datagrams and socket errors are queued and handed out by
    receive() in arrival order.
    """

    class QueryProtocol(asyncio.DatagramProtocol):
        """UDP protocol handler feeding the endpoint queue"""

        def __init__(self, endpoint):
            self.endpoint = endpoint
            super().__init__()

        def connection_made(self, transport):
            self.endpoint.transport = transport

        def datagram_received(self, data, addr):
            self.endpoint.queue.put_nowait((data, addr))

        def error_received(self, exc):
            self.endpoint.queue.put_nowait(exc)

    def __init__(self):
        self.transport = None
        self.queue = asyncio.Queue()
        self.remote_address = None

    def send(self, data: bytes):
        try:
            self.transport.sendto(data)
        except OSError as e:
            raise QueryTransportError(f"Send failed: {e}") from e

    async def receive(self) -> Tuple[bytes, Tuple[str, int]]:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise QueryTransportError(f"Socket error: {item}") from item
        return item

    def close(self):
        if self.transport is not None:
            self.transport.close()
            self.transport = None


class UdpTransport:
    """Opens real asyncio datagram endpoints"""

    @asynccontextmanager
    async def open(self, address: Address) -> AsyncIterator[DatagramEndpoint]:
        loop = asyncio.get_running_loop()
        endpoint = DatagramEndpoint()

        try:
            await loop.create_datagram_endpoint(
                lambda: DatagramEndpoint.QueryProtocol(endpoint),
                remote_addr=(address.host, address.port),
            )
        except (OSError, UnicodeError) as e:
            raise QueryTransportError(f"Could not open socket to {address}: {e}", address) from e

        try:
            peer = endpoint.transport.get_extra_info('peername')
            endpoint.remote_address = tuple(peer[:2]) if peer else (address.host, address.port)
            yield endpoint
        finally:
            endpoint.close()
