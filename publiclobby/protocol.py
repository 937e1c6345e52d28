"""Interfaces of the external protocol collaborator.

The adapter never speaks the wire protocol itself. It is handed a client that already does
transport, handshake and binary decoding, and that maintains the room's networked-object registry.
This module pins down the shape of that client and of the decoded packets it emits.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, MutableMapping, MutableSequence, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, ClassVar, Protocol


class Opcode(IntEnum):
    unreliable = 0
    reliable = 1
    hello = 8
    disconnect = 9
    acknowledge = 10
    ping = 12


class PayloadTag(IntEnum):
    host_game = 0
    join_game = 1
    start_game = 2
    remove_game = 3
    remove_player = 4
    game_data = 5
    game_data_to = 6
    joined_game = 7
    end_game = 8


class MessageTag(IntEnum):
    data = 1
    rpc = 2
    spawn = 4
    despawn = 5
    scene_change = 6
    ready = 7


class RpcId(IntEnum):
    play_animation = 0
    complete_task = 1
    sync_settings = 2
    set_infected = 3
    exiled = 4
    check_name = 5
    set_name = 6
    check_color = 7
    set_color = 8
    set_hat = 9
    set_skin = 10
    report_dead_body = 11
    murder_player = 12
    send_chat = 13
    start_meeting = 14
    set_scanner = 15
    send_chat_note = 16
    set_pet = 17
    set_start_counter = 18
    enter_vent = 19
    exit_vent = 20
    snap_to = 21
    close = 22
    voting_complete = 23
    cast_vote = 24
    clear_vote = 25
    add_vote = 26
    close_doors_of_type = 27
    repair_system = 28
    set_tasks = 29
    update_game_data = 30


class SystemType(IntEnum):
    hallway = 0
    storage = 1
    cafeteria = 2
    reactor = 3
    upper_engine = 4
    nav = 5
    admin = 6
    electrical = 7
    oxygen = 8
    shields = 9
    medbay = 10
    security = 11
    weapons = 12
    lower_engine = 13
    communications = 14


# ---- decoded packets ----


@dataclass(frozen=True, slots=True)
class GameOptions:
    map_id: int
    crewmate_vision: float = 1.0
    impostor_vision: float = 1.5
    player_speed: float = 1.0
    kill_cooldown: float = 30.0
    num_impostors: int = 1
    max_players: int = 10


@dataclass(frozen=True, slots=True)
class DataMessage:
    tag: ClassVar[MessageTag] = MessageTag.data

    net_id: int
    # Systems flagged dirty in this delta. None when the decoder doesn't report it.
    dirty_systems: frozenset[SystemType] | None = None


@dataclass(frozen=True, slots=True)
class RpcMessage:
    tag: ClassVar[MessageTag] = MessageTag.rpc
    rpc_id: ClassVar[RpcId | None] = None

    net_id: int


@dataclass(frozen=True, slots=True)
class SyncSettingsRpc(RpcMessage):
    rpc_id: ClassVar[RpcId | None] = RpcId.sync_settings

    settings: GameOptions = field(default_factory=lambda: GameOptions(map_id=0))


@dataclass(frozen=True, slots=True)
class SetColorRpc(RpcMessage):
    rpc_id: ClassVar[RpcId | None] = RpcId.set_color

    color: int = 0


@dataclass(frozen=True, slots=True)
class StartMeetingRpc(RpcMessage):
    rpc_id: ClassVar[RpcId | None] = RpcId.start_meeting

    # Player id of the reported body; 0xFF for an emergency meeting.
    body_id: int = 0xFF


@dataclass(frozen=True, slots=True)
class VotingCompleteRpc(RpcMessage):
    rpc_id: ClassVar[RpcId | None] = RpcId.voting_complete

    exiled: int = 0xFF
    tie: bool = False


@dataclass(frozen=True, slots=True)
class MurderPlayerRpc(RpcMessage):
    rpc_id: ClassVar[RpcId | None] = RpcId.murder_player

    victim_id: int = 0


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    """Any game-data message the decoder could not (or did not need to) type."""

    tag: MessageTag | int
    net_id: int = 0


GameDataMessage = DataMessage | RpcMessage | UnknownMessage


@dataclass(frozen=True, slots=True)
class Payload:
    tag: PayloadTag | int
    bound: str = "client"
    error: bool = False
    messages: tuple[GameDataMessage, ...] = ()


@dataclass(frozen=True, slots=True)
class Packet:
    op: Opcode | int
    bound: str = "client"
    payloads: tuple[Payload, ...] = ()


# ---- ship systems (comms variants) ----


@dataclass(slots=True)
class HudOverrideSystem:
    """Skeld/Polus communications: a single sabotage flag."""

    sabotaged: bool = False


@dataclass(slots=True)
class HqHudSystem:
    """Mira HQ communications: two consoles that must both be repaired."""

    completed: list[int] = field(default_factory=list)
    active: list[tuple[int, int]] = field(default_factory=list)


# ---- live registry objects ----


@dataclass(frozen=True, slots=True)
class Vector2:
    x: float
    y: float


class PlayerInfo(Protocol):
    player_id: int
    name: str
    color: int


class Component(Protocol):
    net_id: int
    owner_id: int
    classname: str
    room: Any


class PlayerControl(Component, Protocol):
    pass


class GameDataComponent(Component, Protocol):
    players: Mapping[int, PlayerInfo]


class ShipStatusComponent(Component, Protocol):
    systems: Mapping[SystemType, object]


class PlayerObject(Protocol):
    id: int
    room: Any

    @property
    def player_id(self) -> int | None:  # pragma: no cover
        ...

    @property
    def control(self) -> Component | None:  # pragma: no cover
        ...

    @property
    def data(self) -> PlayerInfo | None:  # pragma: no cover
        ...


class NetworkTransform(Component, Protocol):
    position: Vector2

    @property
    def owner(self) -> PlayerObject | None:  # pragma: no cover
        ...


Listener = Callable[..., Any]


class Room(Protocol):
    code: str

    # Owner objects keyed by client id; ids <= 0 are global (the room itself).
    objects: MutableMapping[int, Any]
    # Networked components keyed by net id.
    netobjects: MutableMapping[int, Component]
    # Fixed global slots (ship status, meeting hud, lobby, game data).
    components: MutableSequence[Component | None]

    @property
    def players(self) -> Mapping[int, PlayerObject]:  # pragma: no cover
        ...

    @property
    def host(self) -> PlayerObject | None:  # pragma: no cover
        ...

    @property
    def am_host(self) -> bool:  # pragma: no cover
        ...

    @property
    def ship_status(self) -> ShipStatusComponent | None:  # pragma: no cover
        ...

    def get_player_by_player_id(self, player_id: int) -> PlayerObject | None:  # pragma: no cover
        ...

    def on(self, event: str, listener: Listener) -> None:  # pragma: no cover
        ...

    def off(self, event: str, listener: Listener) -> None:  # pragma: no cover
        ...


class ProtocolClient(Protocol):
    """Connected protocol client.

    Client events: "packet" (Packet), "move"/"snapTo" (NetworkTransform),
    "removePlayerData" (PlayerInfo), "disconnect" (reason, message).
    """

    client_id: int

    @property
    def connected(self) -> bool:  # pragma: no cover
        ...

    async def connect(self, host: str, port: int) -> None:  # pragma: no cover
        ...

    async def identify(self, username: str) -> None:  # pragma: no cover
        ...

    async def join(self, code: str, *, do_spawn: bool = False) -> Room:  # pragma: no cover
        ...

    async def disconnect(self) -> None:  # pragma: no cover
        ...

    def on(self, event: str, listener: Listener) -> None:  # pragma: no cover
        ...

    def off(self, event: str, listener: Listener) -> None:  # pragma: no cover
        ...


ClientFactory = Callable[[str], ProtocolClient]


def player_name(player: PlayerObject | None) -> str | None:
    """Display name of a live player object, or None when its data hasn't spawned."""

    if player is None or player.data is None:
        return None
    return player.data.name or None


def find_player_by_control(room: Room, net_id: int) -> PlayerObject | None:
    for player in room.players.values():
        control = player.control
        if control is not None and control.net_id == net_id:
            return player
    return None


def iter_rpcs(payloads: Sequence[Payload], rpc_id: RpcId) -> list[RpcMessage]:
    out: list[RpcMessage] = []
    for payload in payloads:
        if payload.tag != PayloadTag.game_data:
            continue
        for message in payload.messages:
            if isinstance(message, RpcMessage) and message.rpc_id == rpc_id:
                out.append(message)
    return out
