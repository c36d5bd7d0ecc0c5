"""
Game Server Query Client

One request/response cycle against one game server address.

Flow:
1. Open a UDP endpoint for this query only
2. Send the challenge and start the clock
3. Discard datagrams from other endpoints or with a bad tag
4. Decode the first valid reply, attach the round-trip time
5. Close the endpoint on every exit path
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple, TypeVar

from odx_discovery.protocol.errors import QueryProtocolError, QueryTimeoutError
from odx_discovery.protocol.models import Address, ProbeVariant, ServerRecord, VersionInfo
from odx_discovery.protocol.odalpapi_proto import (
    DecodeError, decode_response, decode_server_info, decode_version_info,
    encode_ping_challenge, encode_probe, encode_server_challenge,
)
from odx_discovery.servers.transport import UdpTransport

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_TIMEOUT_MS = 10000


def basic_record(address: Address, ping: Optional[int] = None) -> ServerRecord:
    """Placeholder record for a server that answered but sent no usable details"""
    return ServerRecord(address=address, name=f"Server at {address}", ping=ping)


class GameServerQueryClient:
    """Queries individual game servers over UDP"""

    def __init__(self, transport=None):
        """
        Args:
            transport: Object with an async-context-manager open(address);
                       defaults to real UDP sockets
        """
        self.transport = transport or UdpTransport()

    # =========================================================================
    # Exchange
    # =========================================================================

    async def _exchange(self, address: Address, timeout_ms: int, packet: bytes,
                        accept: Callable[[bytes], Optional[T]]) -> Tuple[T, int]:
        """
        Send one packet and wait for the first reply accept() takes.

        accept() returns None to keep waiting, raises QueryProtocolError to
        give up, or returns the decoded value.

        Returns:
            (decoded value, round-trip time in ms)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000

        async with self.transport.open(address) as endpoint:
            start = loop.time()
            endpoint.send(packet)

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise QueryTimeoutError(
                        f"Query timeout for {address} after {timeout_ms}ms", address
                    )

                try:
                    data, addr = await asyncio.wait_for(endpoint.receive(), remaining)
                except asyncio.TimeoutError:
                    raise QueryTimeoutError(
                        f"Query timeout for {address} after {timeout_ms}ms", address
                    ) from None

                if tuple(addr[:2]) != tuple(endpoint.remote_address):
                    logger.debug(f"[Query] Ignoring datagram from {addr} while querying {address}")
                    continue

                value = accept(data)
                if value is None:
                    continue

                rtt = round((loop.time() - start) * 1000)
                return value, rtt

    # =========================================================================
    # Queries
    # =========================================================================

    async def query(self, address: Address, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ServerRecord:
        """
        Query full server information.

        Raises:
            QueryTimeoutError, QueryProtocolError, QueryTransportError
        """
        def accept(data: bytes) -> Optional[ServerRecord]:
            envelope = decode_response(data)
            if isinstance(envelope, DecodeError):
                logger.debug(f"[Query] Dropping {envelope.value} datagram from {address}")
                return None
            if not envelope.is_server_reply:
                logger.debug(f"[Query] Dropping non-server reply from {address}")
                return None

            record = decode_server_info(data, address)
            if isinstance(record, DecodeError):
                raise QueryProtocolError(
                    f"Invalid response from {address}: {record.value}", address
                )
            return record

        record, rtt = await self._exchange(address, timeout_ms, encode_server_challenge(), accept)
        logger.debug(f"[Query] {address} answered in {rtt}ms: {record.name}")
        return record.with_ping(rtt)

    async def query_version(self, address: Address,
                            timeout_ms: int = DEFAULT_TIMEOUT_MS) -> VersionInfo:
        """Query only the server version"""
        def accept(data: bytes) -> Optional[VersionInfo]:
            if isinstance(decode_response(data), DecodeError):
                return None
            info = decode_version_info(data)
            if isinstance(info, DecodeError):
                raise QueryProtocolError(
                    f"Invalid version response from {address}: {info.value}", address
                )
            return info

        info, _ = await self._exchange(
            address, timeout_ms, encode_server_challenge(version_query=True), accept
        )
        return info

    async def probe(self, address: Address, timeout_ms: int,
                    variant: ProbeVariant = ProbeVariant.TAGGED) -> ServerRecord:
        """
        LAN probe. Any tag-valid reply counts as a server.

        Returns the full record when the reply decodes, otherwise a basic
        record carrying only the address and ping.
        """
        def accept(data: bytes) -> Optional[ServerRecord]:
            if isinstance(decode_response(data), DecodeError):
                return None
            record = decode_server_info(data, address)
            if isinstance(record, DecodeError):
                return basic_record(address)
            return record

        record, rtt = await self._exchange(address, timeout_ms, encode_probe(variant), accept)
        return record.with_ping(rtt)

    async def ping(self, address: Address, timeout_ms: int = 5000) -> int:
        """Round-trip time of any reply to the ping challenge"""
        _, rtt = await self._exchange(
            address, timeout_ms, encode_ping_challenge(), lambda data: True
        )
        return rtt
