import asyncio
import struct

import pytest

from odx_discovery.protocol.errors import (
    QueryError, QueryProtocolError, QueryTimeoutError, QueryTransportError,
)
from odx_discovery.protocol.models import Address, ProbeVariant
from odx_discovery.protocol.odalpapi_proto import LEGACY_PROBE, encode_server_challenge
from odx_discovery.servers.query_client import GameServerQueryClient, basic_record

from tests.fakes import TAG_WORD, FakeTransport, build_server_info, pack_version

ADDRESS = Address('203.0.113.10', 10666)


def run(coro):
    return asyncio.run(coro)


def test_query_returns_record_with_ping():
    transport = FakeTransport({ADDRESS: [build_server_info(name='Alpha')]})
    client = GameServerQueryClient(transport)

    record = run(client.query(ADDRESS, 200))

    assert record.name == 'Alpha'
    assert record.address == ADDRESS
    assert record.ping is not None and record.ping >= 0
    assert transport.sent == [(ADDRESS, encode_server_challenge())]
    assert transport.all_closed


def test_query_times_out_without_reply():
    transport = FakeTransport()
    client = GameServerQueryClient(transport)

    with pytest.raises(QueryTimeoutError) as exc_info:
        run(client.query(ADDRESS, 20))

    assert exc_info.value.kind == 'timeout'
    assert exc_info.value.address == ADDRESS
    assert transport.all_closed


def test_query_ignores_datagrams_from_other_endpoints():
    spoofed = (build_server_info(name='Spoofed'), ('198.51.100.1', 10666))
    transport = FakeTransport({ADDRESS: [spoofed, build_server_info(name='Real')]})
    client = GameServerQueryClient(transport)

    record = run(client.query(ADDRESS, 200))

    assert record.name == 'Real'


def test_query_skips_bad_tag_and_waits_for_valid_reply():
    garbage = struct.pack('<II', 0x12345678, 90)
    transport = FakeTransport({ADDRESS: [garbage, build_server_info(name='After')]})
    client = GameServerQueryClient(transport)

    assert run(client.query(ADDRESS, 200)).name == 'After'


def test_query_bad_tag_only_times_out():
    garbage = struct.pack('<II', 0x12345678, 90)
    transport = FakeTransport({ADDRESS: [garbage]})
    client = GameServerQueryClient(transport)

    with pytest.raises(QueryTimeoutError):
        run(client.query(ADDRESS, 20))


def test_query_skips_non_server_reply():
    other = build_server_info(name='Other', tag_word=(0xAD0 << 20) | (1 << 16) | (2 << 12))
    transport = FakeTransport({ADDRESS: [other, build_server_info(name='After')]})
    client = GameServerQueryClient(transport)

    assert run(client.query(ADDRESS, 200)).name == 'After'


def test_query_non_server_reply_only_times_out():
    other = build_server_info(tag_word=(0xAD0 << 20) | (1 << 16) | (2 << 12))
    transport = FakeTransport({ADDRESS: [other]})
    client = GameServerQueryClient(transport)

    with pytest.raises(QueryTimeoutError):
        run(client.query(ADDRESS, 20))


def test_query_malformed_body_is_protocol_error():
    transport = FakeTransport({ADDRESS: [build_server_info()[:20]]})
    client = GameServerQueryClient(transport)

    with pytest.raises(QueryProtocolError) as exc_info:
        run(client.query(ADDRESS, 200))

    assert exc_info.value.kind == 'protocol'
    assert transport.all_closed


def test_open_failure_is_transport_error():
    transport = FakeTransport()
    transport.open_errors.add(ADDRESS)
    client = GameServerQueryClient(transport)

    with pytest.raises(QueryTransportError):
        run(client.query(ADDRESS, 200))


def test_socket_error_is_transport_error():
    transport = FakeTransport({ADDRESS: [QueryTransportError("Socket error: refused", ADDRESS)]})
    client = GameServerQueryClient(transport)

    with pytest.raises(QueryError) as exc_info:
        run(client.query(ADDRESS, 200))

    assert exc_info.value.kind == 'transport'
    assert transport.all_closed


def test_query_version():
    reply = struct.pack('<III', TAG_WORD, pack_version(0, 9, 4), 9)
    transport = FakeTransport({ADDRESS: [reply]})
    client = GameServerQueryClient(transport)

    info = run(client.query_version(ADDRESS, 200))

    assert (info.major, info.minor, info.patch) == (0, 9, 4)


def test_probe_with_undecodable_body_returns_basic_record():
    bare = struct.pack('<II', TAG_WORD, 0)
    transport = FakeTransport({ADDRESS: [bare]})
    client = GameServerQueryClient(transport)

    record = run(client.probe(ADDRESS, 200))

    assert record.name == f"Server at {ADDRESS}"
    assert record.version_major is None
    assert record.ping is not None


def test_legacy_probe_sends_four_byte_packet():
    transport = FakeTransport({ADDRESS: [build_server_info()]})
    client = GameServerQueryClient(transport)

    record = run(client.probe(ADDRESS, 200, ProbeVariant.LEGACY))

    assert record.name == 'Test Server'
    assert transport.sent == [(ADDRESS, LEGACY_PROBE)]


def test_ping_accepts_any_reply():
    transport = FakeTransport({ADDRESS: [b'\x01']})
    client = GameServerQueryClient(transport)

    assert run(client.ping(ADDRESS, 200)) >= 0


def test_basic_record():
    record = basic_record(ADDRESS, ping=12)
    assert record.name == 'Server at 203.0.113.10:10666'
    assert record.ping == 12
    assert record.players == []
