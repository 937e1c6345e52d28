from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from fakes import FakeLobby, game_data_packet, payload_packet
from publiclobby.config import AdapterConfig
from publiclobby.fsm import ConnectionState
from publiclobby.models import RejoinReason
from publiclobby.outbox import EventHub, MemorySink
from publiclobby.protocol import PayloadTag, SetColorRpc
from publiclobby.reconnect import CONNECT_FAILED_MESSAGE, JOIN_FAILED_MESSAGE, ReconnectManager
from publiclobby.translator import EventTranslator


def _manager(lobby: FakeLobby, config: AdapterConfig, hub: EventHub) -> ReconnectManager:
    translator = EventTranslator(hub=hub, meeting_grace_seconds=config.meeting_grace_seconds)
    translator.start()
    return ReconnectManager(config=config, client_factory=lobby.factory, translator=translator, hub=hub)


async def _shutdown(manager: ReconnectManager) -> None:
    await manager.teardown()
    await manager.translator.stop()


async def _until(predicate: Callable[[], bool], *, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def _errors(sink: MemorySink) -> list[tuple[str, bool]]:
    return [(str(e.payload["message"]), bool(e.payload["fatal"])) for e in sink.of_type("ERROR")]


@pytest.mark.asyncio
async def test_warm_up_then_join_with_cached_state(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub, sink: MemorySink
) -> None:
    manager = _manager(lobby, config, hub)

    assert await manager.start() is True
    assert manager.state is ConnectionState.active

    # Warm-up view: colors, then map and settings, then host. The adapter's own roster entry is
    # not announced and the live session does not repeat an unchanged host.
    assert [(e.type, e.payload) for e in sink.events] == [
        ("PLAYER_COLOR_CHANGED", {"name": "Red", "color": 0}),
        ("PLAYER_COLOR_CHANGED", {"name": "Blue", "color": 1}),
        ("PLAYER_COLOR_CHANGED", {"name": "Green", "color": 2}),
        ("MAP_CHANGED", {"map": "Polus"}),
        ("SETTINGS_CHANGED", {"crewmate_vision": 0.75}),
        ("HOST_CHANGED", {"name": "Red"}),
    ]

    warm_up, live = lobby.clients
    assert not warm_up.connected
    assert warm_up.identified_as == "auproxy"
    assert live.connected
    assert lobby.join_calls == 2
    # Warm-up spawns in like a player; the live session stays invisible.
    assert lobby.spawn_requests == [True, False]

    assert manager.settings is not None and manager.settings.crewmate_vision == 0.75
    assert manager.cache is not None and set(manager.cache.players) == {1, 2, 3}

    first, second = lobby.rooms
    assert set(second.players) == {1, 2, 3}
    for cid in (1, 2, 3):
        assert second.players[cid] is first.players[cid]
        assert second.players[cid].room is second
    assert second.ship_status is first.ship_status

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_failures_within_budget_are_advisory(config: AdapterConfig, hub: EventHub, sink: MemorySink) -> None:
    lobby = FakeLobby(join_failures=2)
    manager = _manager(lobby, config, hub)

    assert await manager.start() is True

    errors = _errors(sink)
    assert [fatal for _, fatal in errors] == [False, False]
    assert errors[0][0] == "Couldn't join ABCD: Game not found. Retrying 4 more times."
    assert errors[1][0].endswith("Retrying 3 more times.")
    assert lobby.join_calls == 4
    assert manager.state is ConnectionState.active

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_exhausted_join_budget_is_fatal(config: AdapterConfig, hub: EventHub, sink: MemorySink) -> None:
    lobby = FakeLobby(join_failures=config.max_join_attempts)
    manager = _manager(lobby, config, hub)

    assert await manager.start() is False

    errors = _errors(sink)
    assert [fatal for _, fatal in errors] == [False] * (config.max_join_attempts - 1) + [True]
    assert errors[-1][0] == JOIN_FAILED_MESSAGE
    assert lobby.join_calls == config.max_join_attempts
    assert manager.state is ConnectionState.failed
    assert manager.failed.is_set()
    assert all(not c.connected for c in lobby.clients)

    await _shutdown(manager)
    assert manager.state is ConnectionState.failed


@pytest.mark.asyncio
async def test_exhausted_connect_budget_reports_server_message(
    config: AdapterConfig, hub: EventHub, sink: MemorySink
) -> None:
    lobby = FakeLobby(connect_failures=10)
    manager = _manager(lobby, config, hub)

    assert await manager.start() is False

    assert _errors(sink)[-1] == (CONNECT_FAILED_MESSAGE, True)
    assert lobby.connect_calls == config.max_join_attempts
    assert lobby.join_calls == 0

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_spawn_timeout_is_fatal(hub: EventHub, sink: MemorySink) -> None:
    config = AdapterConfig(game_code="ABCD", spawn_timeout_seconds=0.02)
    lobby = FakeLobby(spawn_burst=False)
    manager = _manager(lobby, config, hub)

    assert await manager.start() is False

    [(message, fatal)] = _errors(sink)
    assert fatal is True
    assert "initial spawns" in message
    assert manager.state is ConnectionState.failed
    assert not lobby.clients[0].connected

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_game_end_rejoins_on_the_same_connection(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub, sink: MemorySink
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    live = lobby.clients[-1]
    sink.clear()

    live.emit("packet", payload_packet(PayloadTag.end_game))
    await manager.translator.drain()

    assert [e.payload for e in sink.of_type("ALL_PLAYERS_GROUP_CHANGED")] == [{"group": "Spectator"}]
    assert len(lobby.clients) == 2
    assert manager.session is not None and manager.session.client is live
    assert manager.session.room is lobby.current_room
    assert set(lobby.current_room.players) == {1, 2, 3}
    assert manager.state is ConnectionState.active
    assert lobby.join_calls == 3

    # The translator follows the new room.
    live.emit("packet", game_data_packet(SetColorRpc(net_id=102, color=9)))
    await manager.translator.drain()
    assert [e.payload for e in sink.of_type("PLAYER_COLOR_CHANGED")] == [{"name": "Blue", "color": 9}]

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_connection_loss_rejoins_with_a_fresh_client(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub, sink: MemorySink
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    old = lobby.clients[-1]
    old_room = lobby.current_room

    old.drop_connection()
    await _until(lambda: manager.session is not None and manager.session.client is not old)

    assert len(lobby.clients) == 3
    new = lobby.clients[-1]
    assert manager.session is not None and manager.session.client is new
    assert manager.state is ConnectionState.active
    assert lobby.current_room is not old_room
    assert lobby.current_room.players[2] is lobby.rooms[0].players[2]
    assert old.listener_count("packet") == 0

    sink.clear()
    new.emit("packet", game_data_packet(SetColorRpc(net_id=101, color=4)))
    await manager.translator.drain()
    assert [e.payload for e in sink.of_type("PLAYER_COLOR_CHANGED")] == [{"name": "Red", "color": 4}]

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_host_migration_uses_a_fresh_client(lobby: FakeLobby, config: AdapterConfig, hub: EventHub) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    old = lobby.clients[-1]

    await manager.request_rejoin(RejoinReason.host_migrated)

    assert not old.connected
    assert manager.session is not None and manager.session.client is lobby.clients[-1]
    assert lobby.clients[-1] is not old

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_concurrent_rejoin_requests_are_single_flight(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    joins_before = lobby.join_calls

    await asyncio.gather(
        manager.request_rejoin(RejoinReason.connection_lost),
        manager.request_rejoin(RejoinReason.host_migrated),
    )

    assert lobby.join_calls == joins_before + 1
    assert len(lobby.clients) == 3
    assert not manager.rejoin_in_progress
    assert manager.state is ConnectionState.active

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_rejoin_budget_exhaustion_is_fatal(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub, sink: MemorySink
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    sink.clear()
    lobby.connect_failures = config.max_join_attempts

    await manager.request_rejoin(RejoinReason.connection_lost)

    errors = _errors(sink)
    assert errors[-1] == (CONNECT_FAILED_MESSAGE, True)
    assert sum(1 for _, fatal in errors if fatal) == 1
    assert manager.state is ConnectionState.failed
    assert manager.session is None

    # Terminal: later requests are ignored.
    await manager.request_rejoin(RejoinReason.game_ended)
    assert manager.state is ConnectionState.failed

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_teardown_is_idempotent_and_does_not_trigger_rejoin(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    live = lobby.clients[-1]

    await manager.teardown()
    await manager.teardown()
    await asyncio.sleep(0.01)

    assert not live.connected
    assert manager.session is None
    assert manager.state is ConnectionState.disconnected
    assert len(lobby.clients) == 2
    assert live.listener_count("packet") == 0

    await manager.translator.stop()


@pytest.mark.asyncio
async def test_warm_up_quorum_includes_our_own_control_object(lobby: FakeLobby, hub: EventHub) -> None:
    config = AdapterConfig(game_code="ABCD", spawn_timeout_seconds=0.5)
    manager = _manager(lobby, config, hub)

    assert await manager.start() is True

    warm_up_client = lobby.clients[0]
    warm_up_room = lobby.rooms[0]
    own_control = warm_up_room.players[warm_up_client.client_id].control
    assert own_control is not None and warm_up_room.netobjects[own_control.net_id] is own_control
    # Our own objects never make it into the cache.
    assert manager.cache is not None
    assert warm_up_client.client_id not in manager.cache.players
    assert own_control.net_id not in manager.cache.components

    await _shutdown(manager)


@pytest.mark.asyncio
async def test_teardown_disconnects_the_client_of_an_interrupted_rejoin(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    old = lobby.clients[-1]

    lobby.join_gate = asyncio.Event()
    old.drop_connection()
    await _until(lambda: len(lobby.clients) == 3 and lobby.clients[-1].connected)
    assert manager.rejoin_in_progress

    await manager.teardown()

    pending = lobby.clients[-1]
    assert not pending.connected
    assert pending.listener_count("disconnect") == 0
    assert manager.state is ConnectionState.disconnected
    assert not manager.rejoin_in_progress

    await manager.translator.stop()


@pytest.mark.asyncio
async def test_rejoin_with_unchanged_host_does_not_reannounce_it(
    lobby: FakeLobby, config: AdapterConfig, hub: EventHub, sink: MemorySink
) -> None:
    manager = _manager(lobby, config, hub)
    await manager.start()
    sink.clear()

    await manager.request_rejoin(RejoinReason.host_migrated)
    assert sink.of_type("HOST_CHANGED") == []

    lobby.host_id = 2
    await manager.request_rejoin(RejoinReason.connection_lost)
    assert [e.payload for e in sink.of_type("HOST_CHANGED")] == [{"name": "Blue"}]

    await _shutdown(manager)
