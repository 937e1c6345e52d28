from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import partial
from typing import Any

from publiclobby.config import AdapterConfig
from publiclobby.core import events
from publiclobby.core.object_cache import ObjectCache
from publiclobby.core.sync import SettingsWaiter, SpawnSynchronizer
from publiclobby.errors import JoinAttemptsExhausted, JoinRejected, SyncTimeout, TransportError
from publiclobby.fsm import ConnectionFSM, ConnectionState
from publiclobby.models import RejoinReason
from publiclobby.outbox import EventHub
from publiclobby.protocol import ClientFactory, GameOptions, ProtocolClient, Room
from publiclobby.session import Session
from publiclobby.translator import EventTranslator

logger = logging.getLogger(__name__)

CONNECT_FAILED_MESSAGE = "Couldn't connect to the Among Us servers, the server may be full, try again later!"
JOIN_FAILED_MESSAGE = (
    "Couldn't join the game, make sure that the game hasn't started and there is a spot for the client!"
)


class ReconnectManager:
    """Owns the session lifecycle and the object cache.

    - `start()`: warm-up join (spawn quorum, settings, cache capture, disconnect), then the real
      join with the cache re-attached.
    - `request_rejoin(reason)`: single-flight rejoin reusing the cached state. Requests that
      arrive while one is running are ignored.
    - `teardown()`: idempotent.

    Join attempts (connect + identify + join) share one budget per sequence. Every failure that
    will be retried is reported as an advisory error event; exhausting the budget is fatal and
    leaves the manager in the terminal `failed` state.
    """

    def __init__(
        self,
        *,
        config: AdapterConfig,
        client_factory: ClientFactory,
        translator: EventTranslator,
        hub: EventHub,
    ) -> None:
        self.config = config
        self.translator = translator
        self.hub = hub
        self.fsm = ConnectionFSM()

        self._client_factory = client_factory
        self._cache: ObjectCache | None = None
        self._settings: GameOptions | None = None
        self._session: Session | None = None
        self._rejoin_lock = asyncio.Lock()
        # Every client we created and haven't discarded yet, with its disconnect listener.
        self._clients: dict[int, tuple[ProtocolClient, Callable[..., None]]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._torn_down = False
        # Set once a fatal error has been published.
        self.failed = asyncio.Event()

        translator.rejoin_handler = self.request_rejoin

    @property
    def state(self) -> ConnectionState:
        return self.fsm.connection_state

    @property
    def cache(self) -> ObjectCache | None:
        return self._cache

    @property
    def settings(self) -> GameOptions | None:
        return self._settings

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def rejoin_in_progress(self) -> bool:
        return self._rejoin_lock.locked()

    # ---- lifecycle ----

    async def start(self) -> bool:
        """Warm up and join. Returns False when a fatal error ended the attempt."""

        try:
            await self._warm_up()
            session = await self._establish(before_join=self.translator.bind)
        except (JoinAttemptsExhausted, SyncTimeout) as e:
            self.translator.unbind()
            self._fatal(str(e))
            return False

        self._activate(session)
        logger.info("Initialized public lobby adapter for game %s", self.config.game_code)
        return True

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        self.translator.unbind()
        if self._session is not None:
            await self._close_session(self._session)
        # Clients of interrupted attempts (and a reused client mid-rejoin) are not in a session.
        for client, _ in list(self._clients.values()):
            await self._discard(client)

        if self.state not in (ConnectionState.disconnected, ConnectionState.failed):
            self.fsm.drop()
        logger.info("Destroyed public lobby adapter for game %s", self.config.game_code)

    async def _warm_up(self) -> None:
        """Join once purely to capture a consistent view of the room, then leave."""

        waiter: SettingsWaiter | None = None

        def _arm_settings(client: ProtocolClient) -> None:
            nonlocal waiter
            # Armed before the join so an early settings packet isn't missed.
            waiter = SettingsWaiter(client)
            waiter.arm()

        # Spawn in like a normal player so the quorum includes our own control object.
        session = await self._establish(before_join=_arm_settings, do_spawn=True)
        assert waiter is not None
        try:
            spawns = SpawnSynchronizer(session.room)
            game_data = await spawns.wait(timeout=self.config.spawn_timeout_seconds)
            # Settings only count once the spawn quorum is in: mute derivation needs both.
            settings = await waiter.wait(timeout=self.config.settings_timeout_seconds)

            self._settings = settings
            self.translator.seed_initial_view(
                session.room, settings=settings, game_data=game_data, local_client_id=session.client_id
            )
            self._cache = ObjectCache.capture(session.room, local_client_id=session.client_id)
        finally:
            await self._close_session(session)

        self.fsm.warmed_up()

    def _activate(self, session: Session) -> None:
        # The cache must be in place before the translator sees a single notification.
        if self._cache is not None:
            self._cache.attach(session.room)
        self._session = session
        self.fsm.joined()
        self.translator.open(session)

    # ---- establishing sessions ----

    async def _establish(
        self,
        *,
        before_join: Callable[[ProtocolClient], None] | None = None,
        reuse: ProtocolClient | None = None,
        do_spawn: bool = False,
    ) -> Session:
        budget = self.config.max_join_attempts
        self._mark("begin_connect")

        last_error: Exception | None = None
        for attempt in range(1, budget + 1):
            client = reuse if reuse is not None and reuse.connected else None
            reuse = None
            try:
                if client is None:
                    client = self._new_client()
                    await self._connect(client)
                if before_join is not None:
                    before_join(client)
                self._mark("begin_join")
                room = await self._join(client, do_spawn=do_spawn)
                return Session(client=client, room=room)
            except (TransportError, JoinRejected) as e:
                last_error = e
                if client is not None:
                    await self._discard(client)

                remaining = budget - attempt
                if remaining <= 0:
                    break

                logger.warning("Join attempt %d/%d failed: %s", attempt, budget, e)
                self.hub.publish(events.error(f"{e}. Retrying {remaining} more times.", fatal=False))
                self._mark("retry")
                if self.config.join_retry_delay_seconds:
                    await asyncio.sleep(self.config.join_retry_delay_seconds)
            except BaseException:
                # Cancelled by teardown (or a bug) mid-attempt: the connection must not outlive us.
                if client is not None:
                    await self._discard(client)
                raise

        message = CONNECT_FAILED_MESSAGE if isinstance(last_error, TransportError) else JOIN_FAILED_MESSAGE
        raise JoinAttemptsExhausted(message) from last_error

    def _mark(self, event: str) -> None:
        # A rejoin stays in `rejoining` for the whole attempt loop.
        if self.state is ConnectionState.rejoining:
            return
        if event == "begin_connect" and self.state is ConnectionState.connecting:
            return
        self.fsm.send(event)

    def _new_client(self) -> ProtocolClient:
        client = self._client_factory(self.config.game_version)
        listener = partial(self._on_disconnect, client)
        self._clients[id(client)] = (client, listener)
        client.on("disconnect", listener)
        return client

    async def _connect(self, client: ProtocolClient) -> None:
        host, port = self.config.master_server()
        try:
            await client.connect(host, port)
            await client.identify(self.config.client_name)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Couldn't connect to {host}:{port}: {e}") from e

    async def _join(self, client: ProtocolClient, *, do_spawn: bool) -> Room:
        try:
            return await client.join(self.config.game_code, do_spawn=do_spawn)
        except JoinRejected:
            raise
        except Exception as e:
            raise JoinRejected(f"Couldn't join {self.config.game_code}: {e}") from e

    async def _close_session(self, session: Session) -> None:
        session.closed = True
        if self._session is session:
            self._session = None
        await self._discard(session.client)

    async def _discard(self, client: ProtocolClient) -> None:
        tracked = self._clients.pop(id(client), None)
        if tracked is not None:
            client.off("disconnect", tracked[1])
        if not client.connected:
            return
        try:
            await client.disconnect()
        except Exception:
            logger.warning("Error while disconnecting client", exc_info=True)

    # ---- rejoin ----

    def _on_disconnect(self, client: ProtocolClient, *args: Any) -> None:
        session = self._session
        if session is None or session.client is not client or session.closed:
            return
        if self.state is not ConnectionState.active:
            return

        logger.warning("Client disconnected: %s", " ".join(str(a) for a in args) or "no reason given")
        task = asyncio.get_running_loop().create_task(
            self.request_rejoin(RejoinReason.connection_lost), name="lobby-rejoin"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def request_rejoin(self, reason: RejoinReason) -> None:
        if self._rejoin_lock.locked():
            logger.warning("Rejoin already in progress; ignoring %s request", reason.value)
            return

        async with self._rejoin_lock:
            old = self._session
            if self.state is not ConnectionState.active or old is None:
                logger.warning("Ignoring %s rejoin request in state %s", reason.value, self.state.value)
                return

            logger.info("Rejoining %s (%s)", self.config.game_code, reason.value)
            self.fsm.begin_rejoin()
            self.translator.unbind()

            # A finished round keeps the connection; anything else starts from a fresh one.
            old.closed = True
            self._session = None
            reuse: ProtocolClient | None = None
            if reason is RejoinReason.game_ended and old.client.connected:
                reuse = old.client
            else:
                await self._discard(old.client)

            try:
                session = await self._establish(before_join=self.translator.bind, reuse=reuse)
            except JoinAttemptsExhausted as e:
                self.translator.unbind()
                self._fatal(str(e))
                return

            if self._torn_down:
                await self._close_session(session)
                return
            self._activate(session)

    def _fatal(self, message: str) -> None:
        logger.error("Fatal adapter error: %s", message)
        self.hub.publish(events.error(message, fatal=True))
        self.failed.set()
        if self.state is not ConnectionState.failed:
            self.fsm.fail()
