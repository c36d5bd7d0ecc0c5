import asyncio
import logging

from odx_discovery.config import Config
from odx_discovery.protocol.models import Address, NetworkInterface, Player, ServerSource
from odx_discovery.servers.custom_servers import CustomServerRegistry
from odx_discovery.servers.local_scanner import LocalNetworkScanner
from odx_discovery.servers.query_client import GameServerQueryClient
from odx_discovery.servers.scheduler import LOCAL, MASTER, NO_VALID_SERVERS, RefreshScheduler

from tests.fakes import FakeTransport, build_master_response, build_server_info

MASTER_ADDRESS = Address('master1.odamex.net', 15000)
GAME_SERVER = Address('203.0.113.1', 10666)
LAN_SERVER = Address('192.168.1.50', 10666)
LAN = NetworkInterface('eth0', '192.168.1.20', '255.255.255.0', '192.168.1.0/24')


def make_config(**overrides):
    config = Config()
    config.MASTER_SERVERS = ['master1.odamex.net']
    config.MASTER_TIMEOUT_MS = 50
    config.QUERY_TIMEOUT_MS = 50
    config.MASTER_REFRESH_MINUTES = 60
    config.LOCAL_DISCOVERY_ENABLED = False
    config.LOCAL_PORT_START = 10666
    config.LOCAL_PORT_END = 10666
    config.LOCAL_SCAN_TIMEOUT_MS = 10
    config.LOCAL_REFRESH_SECONDS = 3600
    config.LOCAL_PROBE_VARIANT = 'tagged'
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def make_scheduler(transport, config=None, custom=()):
    config = config or make_config()
    client = GameServerQueryClient(transport)
    scanner = LocalNetworkScanner(client, interface_source=lambda: [LAN], follow_up_timeout_ms=20)
    return RefreshScheduler(
        config, client=client, scanner=scanner,
        custom_registry=CustomServerRegistry(custom),
    )


def master_sends(transport):
    return sum(1 for address, _ in transport.sent if address == MASTER_ADDRESS)


def test_master_refresh_publishes_servers():
    transport = FakeTransport({
        MASTER_ADDRESS: [build_master_response([GAME_SERVER])],
        GAME_SERVER: [build_server_info(name='Remote DM')],
    })
    scheduler = make_scheduler(transport)

    asyncio.run(scheduler.refresh(MASTER))

    assert [r.name for r in scheduler.servers.records()] == ['Remote DM']
    assert scheduler.master_status['available']
    assert scheduler.master_status['host'] == 'master1.odamex.net'
    assert scheduler.error is None
    assert scheduler.last_updated is not None


def test_unreachable_master_sets_error():
    scheduler = make_scheduler(FakeTransport())

    asyncio.run(scheduler.refresh(MASTER))

    assert len(scheduler.servers) == 0
    assert not scheduler.master_status['available']
    assert 'master1.odamex.net' in scheduler.error


def test_all_servers_failing_sets_error():
    transport = FakeTransport({MASTER_ADDRESS: [build_master_response([GAME_SERVER])]})
    scheduler = make_scheduler(transport)

    asyncio.run(scheduler.refresh(MASTER))

    assert scheduler.error == NO_VALID_SERVERS


def test_refresh_does_not_stack():
    scheduler = make_scheduler(FakeTransport())

    async def scenario():
        first = asyncio.create_task(scheduler.refresh(MASTER))
        await asyncio.sleep(0.01)
        assert scheduler.snapshot()['refreshing'][MASTER]
        await scheduler.refresh(MASTER)
        await first

    asyncio.run(scenario())

    assert master_sends(scheduler.master_client.transport) == 1


def test_forced_refresh_replaces_running_one():
    transport = FakeTransport()
    scheduler = make_scheduler(transport)

    async def scenario():
        first = asyncio.create_task(scheduler.refresh(MASTER))
        await asyncio.sleep(0.01)
        transport.responders[MASTER_ADDRESS] = [build_master_response([GAME_SERVER])]
        transport.responders[GAME_SERVER] = [build_server_info(name='Fresh')]
        await scheduler.refresh(MASTER, force=True)
        await first
        assert MASTER in scheduler._timers
        await scheduler.stop()

    asyncio.run(scenario())

    assert master_sends(transport) == 2
    assert [r.name for r in scheduler.servers.records()] == ['Fresh']
    assert scheduler.error is None


def test_concurrent_forced_refreshes_do_not_stack():
    transport = FakeTransport({MASTER_ADDRESS: [build_master_response([])]})
    scheduler = make_scheduler(transport)
    refresh_body = scheduler._refresh_master
    active = []
    peak = []

    async def counted_refresh():
        active.append(1)
        peak.append(len(active))
        try:
            await asyncio.sleep(0.02)
            await refresh_body()
        finally:
            active.pop()

    scheduler._refresh_master = counted_refresh

    async def scenario():
        await asyncio.gather(
            scheduler.refresh(MASTER, force=True),
            scheduler.refresh(MASTER, force=True),
        )
        assert len(scheduler._timers) == 1
        await scheduler.stop()
        return [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]

    leftover = asyncio.run(scenario())

    assert max(peak) == 1
    assert leftover == []


def test_local_refresh_merges_ahead_of_master():
    transport = FakeTransport({
        MASTER_ADDRESS: [build_master_response([GAME_SERVER, LAN_SERVER])],
        GAME_SERVER: [build_server_info(name='Remote DM')],
        LAN_SERVER: [build_server_info(name='LAN Party')],
    })
    scheduler = make_scheduler(transport, make_config(LOCAL_DISCOVERY_ENABLED=True))

    async def scenario():
        await scheduler.refresh(MASTER)
        await scheduler.refresh(LOCAL)

    asyncio.run(scenario())

    assert [s.source for s in scheduler.servers] == [ServerSource.LOCAL, ServerSource.MASTER]
    assert [r.name for r in scheduler.servers.records()] == ['LAN Party', 'Remote DM']
    assert scheduler.snapshot()['local']['enabled']


def test_custom_servers_are_included():
    custom = Address('198.51.100.7', 10666)
    transport = FakeTransport({
        MASTER_ADDRESS: [build_master_response([])],
        custom: [build_server_info(name='Friend')],
    })
    scheduler = make_scheduler(transport, custom=[])
    scheduler.custom_registry.add('198.51.100.7:10666')

    asyncio.run(scheduler.refresh(MASTER))

    assert [s.source for s in scheduler.servers] == [ServerSource.CUSTOM]


def test_custom_servers_are_queried_while_master_is_pending():
    custom = Address('198.51.100.7', 10666)
    master_checked = []

    def custom_responder(data):
        master_checked.append(scheduler.master_status['last_checked'])
        return [build_server_info(name='Friend')]

    transport = FakeTransport({custom: custom_responder})
    scheduler = make_scheduler(transport, make_config(MASTER_TIMEOUT_MS=200))
    scheduler.custom_registry.add('198.51.100.7:10666')

    asyncio.run(scheduler.refresh(MASTER))

    assert master_checked == [None]
    assert scheduler.master_status['last_checked'] is not None
    assert [s.source for s in scheduler.servers] == [ServerSource.CUSTOM]


def test_start_and_stop():
    transport = FakeTransport({MASTER_ADDRESS: [build_master_response([])]})
    scheduler = make_scheduler(transport)

    async def scenario():
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

    asyncio.run(scenario())

    assert master_sends(transport) == 1
    assert scheduler.master_status['available']
    assert scheduler._timers == {}


def test_player_activity_is_logged(caplog):
    caplog.set_level(logging.INFO, logger='odx_discovery.servers.scheduler')
    transport = FakeTransport({
        MASTER_ADDRESS: [build_master_response([GAME_SERVER])],
        GAME_SERVER: [build_server_info(name='Remote DM', players=[Player('alice'), Player('bob')])],
    })
    scheduler = make_scheduler(transport)

    async def scenario():
        await scheduler.refresh(MASTER)
        transport.responders[GAME_SERVER] = [
            build_server_info(name='Remote DM', players=[Player('alice')])
        ]
        await scheduler.refresh(MASTER)

    asyncio.run(scenario())

    assert 'New server: Remote DM (2 players)' in caplog.text
    assert 'Remote DM: 1 player(s) left' in caplog.text
    assert scheduler.snapshot()['servers']['count'] == 1
