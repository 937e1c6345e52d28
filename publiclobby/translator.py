from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from publiclobby.config import DEFAULT_MEETING_GRACE_SECONDS
from publiclobby.core import events
from publiclobby.core.comms import GroupTransition, derive_comms_transition
from publiclobby.core.meeting_delay import MeetingDelay
from publiclobby.errors import ProtocolDecodeError, StateInconsistency
from publiclobby.models import NO_COLOR, NO_EXILE, MapId, RejoinReason, RoomGroup
from publiclobby.outbox import EventHub
from publiclobby.protocol import (
    DataMessage,
    GameDataComponent,
    GameDataMessage,
    GameOptions,
    MurderPlayerRpc,
    NetworkTransform,
    Opcode,
    Packet,
    Payload,
    PayloadTag,
    PlayerInfo,
    PlayerObject,
    ProtocolClient,
    Room,
    RpcMessage,
    SetColorRpc,
    StartMeetingRpc,
    SyncSettingsRpc,
    SystemType,
    VotingCompleteRpc,
    find_player_by_control,
    player_name,
)
from publiclobby.session import Session

logger = logging.getLogger(__name__)

RejoinHandler = Callable[[RejoinReason], Awaitable[None]]

# Client events the translator consumes.
_CLIENT_EVENTS = ("packet", "move", "snapTo", "removePlayerData")


def map_display_name(map_id: int) -> str:
    try:
        return MapId(map_id).display_name
    except ValueError:
        return str(map_id)


@dataclass(slots=True)
class RoomView:
    """Derived, transient state of the room. Never persisted."""

    map_id: int | None = None
    host_name: str | None = None
    # Group per player client id.
    groups: dict[int, RoomGroup] = field(default_factory=dict)

    def rebuilt_for(self, room: Room) -> "RoomView":
        # Settings are not re-synced on rejoin, so the map carries over; ids are stable across
        # rejoins, so group membership carries over for players still in the room. The host
        # name is kept so an unchanged host is not announced again.
        return RoomView(
            map_id=self.map_id,
            host_name=self.host_name,
            groups={pid: group for pid, group in self.groups.items() if pid in room.players},
        )


@dataclass(frozen=True, slots=True)
class _Queued:
    binding: object
    kind: str
    args: tuple[Any, ...]


class EventTranslator:
    """Turn protocol notifications into semantic room events.

    Lifecycle per session (driven by the ReconnectManager):
      - `bind(client)` before joining, so nothing the client emits during the join is lost;
      - `open(session)` once the object cache has been re-attached, which releases the queue;
      - `unbind()` on teardown, which also drops pending meeting actions.

    Notifications are queued and handled by a single consumer task (`run`) in receipt order.
    """

    def __init__(
        self,
        *,
        hub: EventHub,
        meeting_grace_seconds: float = DEFAULT_MEETING_GRACE_SECONDS,
        rejoin: RejoinHandler | None = None,
    ) -> None:
        self.hub = hub
        self.meeting_grace_seconds = meeting_grace_seconds
        self.rejoin_handler = rejoin
        self.view = RoomView()

        self._client: ProtocolClient | None = None
        self._session: Session | None = None
        # Fresh token per bind; queued items carry it so stale ones can be told apart.
        self._binding: object | None = None
        self._meetings: MeetingDelay | None = None
        self._listeners: dict[str, Callable[..., None]] = {}

        self._queue: asyncio.Queue[_Queued] = asyncio.Queue()
        self._open = asyncio.Event()
        self._consumer: asyncio.Task[None] | None = None

        self._payload_handlers: dict[int, Callable[[Payload], Awaitable[None]]] = {
            PayloadTag.join_game: self._on_join_game,
            PayloadTag.start_game: self._on_start_game,
            PayloadTag.end_game: self._on_end_game,
            PayloadTag.remove_player: self._on_remove_player,
            PayloadTag.game_data: self._on_game_data,
            PayloadTag.game_data_to: self._on_game_data,
        }

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def meetings(self) -> MeetingDelay | None:
        return self._meetings

    # ---- session binding ----

    def bind(self, client: ProtocolClient) -> None:
        if self._client is not None:
            self.unbind()

        self._client = client
        self._binding = binding = object()
        self._listeners = {name: partial(self._enqueue, binding, name) for name in _CLIENT_EVENTS}
        for name, listener in self._listeners.items():
            client.on(name, listener)

    def open(self, session: Session) -> None:
        if session.client is not self._client:
            raise ValueError("Session belongs to a client the translator is not bound to")

        self._session = session
        self.view = self.view.rebuilt_for(session.room)
        self._meetings = MeetingDelay(delay=self.meeting_grace_seconds)
        self._open.set()
        logger.info("Translator attached to room %s", getattr(session.room, "code", "?"))
        self._emit_host(session)

    def unbind(self) -> None:
        self._open.clear()

        if self._meetings is not None:
            self._meetings.cancel_all()
            self._meetings = None

        if self._client is not None:
            for name, listener in self._listeners.items():
                self._client.off(name, listener)

        self._listeners = {}
        self._client = None
        self._binding = None
        self._session = None

    def _is_live(self, session: Session) -> bool:
        return self._session is session and not session.closed

    # ---- consumer ----

    def _enqueue(self, binding: object, kind: str, *args: Any) -> None:
        self._queue.put_nowait(_Queued(binding=binding, kind=kind, args=args))

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self.run(), name="event-translator")

    async def stop(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    async def drain(self) -> None:
        """Wait until every queued notification has been handled (or dropped)."""

        await self._queue.join()

    async def run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._open.wait()
                if item.binding is not self._binding or self._session is None:
                    logger.debug("Dropping %s queued for a session that is gone", item.kind)
                    continue
                await self.dispatch(item.kind, *item.args)
            except asyncio.CancelledError:
                raise
            except ProtocolDecodeError as e:
                logger.warning("Dropping undecodable %s notification: %s", item.kind, e)
            except Exception:
                logger.exception("Failed handling %s notification", item.kind)
            finally:
                self._queue.task_done()

    async def dispatch(self, kind: str, *args: Any) -> None:
        if kind == "packet":
            packet = args[0] if args else None
            if not isinstance(packet, Packet):
                raise ProtocolDecodeError(f"expected a decoded packet, got {type(packet).__name__}")
            await self.handle_packet(packet)
        elif kind in ("move", "snapTo"):
            self.handle_transform(args[-1])
        elif kind == "removePlayerData":
            self.handle_remove_player_data(args[-1])

    # ---- packets ----

    async def handle_packet(self, packet: Packet) -> None:
        if packet.op not in (Opcode.reliable, Opcode.unreliable):
            return

        session = self._session
        for payload in packet.payloads:
            # A rejoin mid-packet leaves the rest of it addressed to the old room.
            if session is None or self._session is not session:
                return
            handler = self._payload_handlers.get(payload.tag)
            if handler is None:
                continue
            await handler(payload)

    async def _on_join_game(self, payload: Payload) -> None:
        if payload.bound == "client" and not payload.error and self._session is not None:
            self._emit_host(self._session)

    async def _on_start_game(self, payload: Payload) -> None:
        self._set_all_groups(RoomGroup.main)
        logger.info("Game started")

    async def _on_end_game(self, payload: Payload) -> None:
        self._set_all_groups(RoomGroup.spectator)
        logger.info("Game ended; rejoining lobby")
        await self._request_rejoin(RejoinReason.game_ended)

    async def _on_remove_player(self, payload: Payload) -> None:
        if payload.bound != "client" or self._session is None:
            return

        # Host authority migrated to us; the adapter can't act as host, so the session is lost.
        if self._session.room.am_host:
            logger.warning("Host authority passed to the adapter; reconnecting")
            await self._request_rejoin(RejoinReason.host_migrated)

        if self._session is not None:
            self._emit_host(self._session)
        logger.info("Player removed from room")

    async def _on_game_data(self, payload: Payload) -> None:
        session = self._session
        for message in payload.messages:
            if session is None or self._session is not session:
                return
            self.handle_game_data_message(session, message)

    def handle_game_data_message(self, session: Session, message: GameDataMessage) -> None:
        try:
            if isinstance(message, DataMessage):
                self._on_data(session, message)
            elif isinstance(message, RpcMessage):
                self._on_rpc(session, message)
        except StateInconsistency as e:
            # Data raced ahead of the spawn it refers to.
            logger.debug("Ignoring %s: %s", type(message).__name__, e)

    def _on_data(self, session: Session, message: DataMessage) -> None:
        ship = session.room.ship_status
        if ship is None or message.net_id != ship.net_id:
            return
        if message.dirty_systems is not None and SystemType.communications not in message.dirty_systems:
            return

        comms = ship.systems.get(SystemType.communications)
        if comms is None:
            return

        transition = derive_comms_transition(self.view.map_id, comms)
        if transition is None:
            logger.debug("No comms model for map %s", self.view.map_id)
            return
        self._apply_transition(session, transition)

    def _on_rpc(self, session: Session, message: RpcMessage) -> None:
        room = session.room

        if isinstance(message, SyncSettingsRpc):
            self._apply_settings(message.settings)

        elif isinstance(message, SetColorRpc):
            _, name = _resolve_control(room, message.net_id)
            self.hub.publish(events.player_color_changed(name, message.color))

        elif isinstance(message, StartMeetingRpc):
            self._schedule(partial(self._reset_poses, session), name="pose-reset")
            logger.info("Meeting started")

        elif isinstance(message, VotingCompleteRpc):
            logger.info("Meeting ended (exiled=%s)", message.exiled)
            if message.exiled != NO_EXILE:
                self._schedule(partial(self._exile, session, message.exiled), name=f"exile:{message.exiled}")

        elif isinstance(message, MurderPlayerRpc):
            victim, name = _resolve_control(room, message.victim_id)
            self._move_player(victim.id, name, RoomGroup.spectator)
            logger.info("Murdered %s", name)

    def _schedule(self, action: Callable[[], None], *, name: str) -> None:
        if self._meetings is None:
            return
        self._meetings.schedule(action, name=name)

    def _reset_poses(self, session: Session) -> None:
        if not self._is_live(session):
            return
        self.hub.publish(events.all_players_pose_changed(0, 0))

    def _exile(self, session: Session, player_id: int) -> None:
        if not self._is_live(session):
            return
        player = session.room.get_player_by_player_id(player_id)
        name = player_name(player)
        if player is None or name is None:
            logger.debug("Exiled player %s is not in the room", player_id)
            return
        self._move_player(player.id, name, RoomGroup.spectator)
        logger.info("Voted off %s", name)

    # ---- movement / roster ----

    def handle_transform(self, transform: NetworkTransform) -> None:
        name = player_name(transform.owner)
        if name is None:
            return
        self.hub.publish(events.player_pose_changed(name, transform.position.x, transform.position.y))

    def handle_remove_player_data(self, info: PlayerInfo | None) -> None:
        if info is None or not info.name:
            return
        self.hub.publish(events.player_color_changed(info.name, NO_COLOR))

    # ---- initial view ----

    def seed_initial_view(
        self,
        room: Room,
        *,
        settings: GameOptions,
        game_data: GameDataComponent,
        local_client_id: int | None = None,
    ) -> None:
        """Emit the view reconstructed during warm-up: colors, map, settings, host.

        The adapter's own roster entry (present when it spawned in to warm up) is not announced.
        """

        local = room.players.get(local_client_id) if local_client_id is not None else None
        own_player_id = local.player_id if local is not None else None
        for info in game_data.players.values():
            if info.name and info.player_id != own_player_id:
                self.hub.publish(events.player_color_changed(info.name, info.color))

        self.view.map_id = None
        self._apply_settings(settings)
        self._publish_host(room)

    # ---- derived state helpers ----

    def _apply_settings(self, settings: GameOptions) -> None:
        if settings.map_id != self.view.map_id:
            self.view.map_id = settings.map_id
            self.hub.publish(events.map_changed(map_display_name(settings.map_id)))
        self.hub.publish(events.settings_changed(crewmate_vision=settings.crewmate_vision))

    def _emit_host(self, session: Session) -> None:
        self._publish_host(session.room)

    def _publish_host(self, room: Room) -> None:
        name = player_name(room.host)
        # Unknown host, or the one already announced.
        if name is None or name == self.view.host_name:
            return
        self.view.host_name = name
        self.hub.publish(events.host_changed(name))

    def _set_all_groups(self, group: RoomGroup) -> None:
        session = self._session
        if session is not None:
            for client_id, player in session.room.players.items():
                if client_id != session.client_id and player_name(player) is not None:
                    self.view.groups[client_id] = group
        self.hub.publish(events.all_players_group_changed(group))

    def _apply_transition(self, session: Session, transition: GroupTransition) -> None:
        for client_id, group in list(self.view.groups.items()):
            if group != transition.source:
                continue
            name = player_name(session.room.players.get(client_id))
            if name is None:
                # Left the room since the game started.
                del self.view.groups[client_id]
                continue
            self._move_player(client_id, name, transition.target)

    def _move_player(self, client_id: int, name: str, group: RoomGroup) -> None:
        self.view.groups[client_id] = group
        self.hub.publish(events.player_group_changed(name, group))

    async def _request_rejoin(self, reason: RejoinReason) -> None:
        if self.rejoin_handler is None:
            logger.warning("Rejoin (%s) requested but no handler is installed", reason.value)
            return
        await self.rejoin_handler(reason)


def _resolve_control(room: Room, net_id: int) -> tuple[PlayerObject, str]:
    player = find_player_by_control(room, net_id)
    name = player_name(player)
    if player is None or name is None:
        raise StateInconsistency(f"no named player owns control object {net_id}")
    return player, name
