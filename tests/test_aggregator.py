import asyncio

from odx_discovery.protocol.models import (
    Address, CustomServerEntry, ServerRecord, ServerSource,
)
from odx_discovery.servers.aggregator import ServerAggregator, merge
from odx_discovery.servers.query_client import GameServerQueryClient

from tests.fakes import FakeTransport, build_server_info


def record(host, port=10666, name=None):
    return ServerRecord(address=Address(host, port), name=name or host)


def test_merge_orders_local_custom_master():
    local = [record('192.168.1.5')]
    custom = [record('198.51.100.7')]
    master = [record('203.0.113.1'), record('203.0.113.2')]

    merged = merge(local, custom, master)

    assert [str(a) for a in merged.addresses()] == [
        '192.168.1.5:10666', '198.51.100.7:10666', '203.0.113.1:10666', '203.0.113.2:10666',
    ]
    assert [s.source for s in merged] == [
        ServerSource.LOCAL, ServerSource.CUSTOM, ServerSource.MASTER, ServerSource.MASTER,
    ]


def test_merge_prefers_local_over_master():
    local = [record('10.0.0.5', name='local copy')]
    master = [record('10.0.0.5', name='master copy'), record('203.0.113.1')]

    merged = merge(local, [], master)

    assert len(merged) == 2
    first = merged.servers[0]
    assert first.record.name == 'local copy'
    assert first.source is ServerSource.LOCAL
    assert first.sources == frozenset({ServerSource.LOCAL, ServerSource.MASTER})
    assert merged.by_source(ServerSource.LOCAL) == [local[0]]


def test_merge_shows_custom_listed_by_master_as_master():
    custom = [record('203.0.113.1', name='custom copy'), record('198.51.100.7')]
    master = [record('203.0.113.1', name='master copy')]

    merged = merge([], custom, master)

    assert [s.record.name for s in merged] == ['198.51.100.7', 'master copy']
    assert merged.servers[1].source is ServerSource.MASTER
    assert merged.servers[1].sources == frozenset({ServerSource.CUSTOM, ServerSource.MASTER})


def test_local_records_always_come_first():
    local = [record('192.168.1.%d' % i) for i in range(1, 4)]
    master = [record('203.0.113.%d' % i) for i in range(1, 4)] + [record('192.168.1.2')]

    merged = merge(local, [], master)

    sources = [s.source for s in merged]
    last_local = max(i for i, s in enumerate(sources) if s is ServerSource.LOCAL)
    first_other = min(i for i, s in enumerate(sources) if s is not ServerSource.LOCAL)
    assert last_local < first_other
    assert len(set(merged.addresses())) == len(merged)


def test_aggregate_queries_custom_and_master():
    custom_address = Address('198.51.100.7', 10666)
    master_address = Address('203.0.113.1', 10666)
    local_address = Address('192.168.1.5', 10666)
    transport = FakeTransport({
        custom_address: [build_server_info(name='Custom')],
        master_address: [build_server_info(name='Master')],
        local_address: [build_server_info(name='From master query')],
    })
    aggregator = ServerAggregator(GameServerQueryClient(transport), timeout_ms=50)

    merged = asyncio.run(aggregator.aggregate(
        local=[record('192.168.1.5', name='From LAN')],
        custom=[CustomServerEntry('198.51.100.7:10666', 0), CustomServerEntry('bad entry', 1)],
        master=[master_address, local_address, Address('203.0.113.99', 10666)],
    ))

    assert [s.record.name for s in merged] == ['From LAN', 'Custom', 'Master']
    assert aggregator.last_status.queried == 4
    assert aggregator.last_status.answered == 3
    assert not aggregator.last_status.all_failed
    assert [r.name for r in aggregator.last_master_results] == ['Master', 'From master query']


def test_aggregate_caps_master_concurrency():
    master = [Address('203.0.113.%d' % i, 10666) for i in range(1, 31)]
    transport = FakeTransport()
    aggregator = ServerAggregator(GameServerQueryClient(transport), timeout_ms=10,
                                  master_max_concurrent=4)

    merged = asyncio.run(aggregator.aggregate([], [], master))

    assert len(merged) == 0
    assert transport.max_in_flight == 4
    assert aggregator.last_status.all_failed


def test_aggregate_queries_custom_before_master_list_arrives():
    custom_address = Address('198.51.100.7', 10666)
    master_address = Address('203.0.113.1', 10666)
    transport = FakeTransport({
        custom_address: [build_server_info(name='Custom')],
        master_address: [build_server_info(name='Master')],
    })
    aggregator = ServerAggregator(GameServerQueryClient(transport), timeout_ms=50)
    sent_before_list = []

    async def slow_master_list():
        await asyncio.sleep(0.05)
        sent_before_list.extend(address for address, _ in transport.sent)
        return [master_address]

    merged = asyncio.run(aggregator.aggregate(
        [], [CustomServerEntry('198.51.100.7:10666', 0)], slow_master_list()
    ))

    assert sent_before_list == [custom_address]
    assert [s.record.name for s in merged] == ['Custom', 'Master']
    assert aggregator.last_status.queried == 2
