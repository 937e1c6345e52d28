from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from publiclobby.errors import SyncTimeout
from publiclobby.protocol import (
    Component,
    GameDataComponent,
    GameOptions,
    Opcode,
    Packet,
    ProtocolClient,
    Room,
    RpcId,
    SyncSettingsRpc,
    iter_rpcs,
)

logger = logging.getLogger(__name__)


async def _wait(fut: asyncio.Future, *, timeout: float | None, what: str):
    # shield: a timed-out wait must not cancel the underlying future for other waiters.
    try:
        return await asyncio.wait_for(asyncio.shield(fut), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise SyncTimeout(f"Timed out after {timeout}s waiting for {what}") from e


class SpawnSynchronizer:
    """Resolve once the room's game data and every known player's control object have spawned.

    Spawn order is arbitrary and duplicates happen; the condition is re-evaluated on every
    notification. As soon as it holds the spawn listener is removed and the ready signal fires,
    exactly once for the lifetime of this object.
    """

    def __init__(self, room: Room, *, on_ready: Callable[[GameDataComponent], None] | None = None) -> None:
        self._room = room
        self._on_ready = on_ready
        self._game_data: GameDataComponent | None = None
        self._spawned_owners: set[int] = set()
        self._listening = False
        self._ready: asyncio.Future[GameDataComponent] = asyncio.get_running_loop().create_future()

    @property
    def ready(self) -> bool:
        return self._ready.done()

    @property
    def spawned_owners(self) -> frozenset[int]:
        return frozenset(self._spawned_owners)

    def arm(self) -> None:
        if self._listening or self.ready:
            return
        self._room.on("spawn", self.on_spawn)
        self._listening = True

    def on_spawn(self, component: Component) -> None:
        if self.ready:
            return

        if component.classname == "GameData":
            self._game_data = component  # type: ignore[assignment]
        elif component.classname == "PlayerControl":
            self._spawned_owners.add(component.owner_id)

        self._evaluate()

    def _evaluate(self) -> None:
        if self._game_data is None:
            return
        if any(client_id not in self._spawned_owners for client_id in self._room.players):
            return

        if self._listening:
            self._room.off("spawn", self.on_spawn)
            self._listening = False

        logger.info("Spawn quorum reached (%d players)", len(self._spawned_owners))
        self._ready.set_result(self._game_data)
        if self._on_ready is not None:
            self._on_ready(self._game_data)

    async def wait(self, *, timeout: float | None = None) -> GameDataComponent:
        self.arm()
        return await _wait(self._ready, timeout=timeout, what="initial spawns")


class SettingsWaiter:
    """Resolve with the options carried by the first SyncSettings RPC seen on the wire."""

    def __init__(self, client: ProtocolClient) -> None:
        self._client = client
        self._listening = False
        self._settings: asyncio.Future[GameOptions] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._settings.done()

    def arm(self) -> None:
        if self._listening or self.done:
            return
        self._client.on("packet", self.on_packet)
        self._listening = True

    def on_packet(self, packet: Packet) -> None:
        if self.done:
            return
        if packet.bound != "client" or packet.op != Opcode.reliable:
            return

        rpcs = iter_rpcs(packet.payloads, RpcId.sync_settings)
        settings = next((rpc.settings for rpc in rpcs if isinstance(rpc, SyncSettingsRpc)), None)
        if settings is None:
            return

        if self._listening:
            self._client.off("packet", self.on_packet)
            self._listening = False

        logger.info("Received initial settings (map=%s)", settings.map_id)
        self._settings.set_result(settings)

    async def wait(self, *, timeout: float | None = None) -> GameOptions:
        self.arm()
        return await _wait(self._settings, timeout=timeout, what="settings sync")
