from __future__ import annotations

import asyncio
import logging

from publiclobby.config import AdapterConfig
from publiclobby.fsm import ConnectionState
from publiclobby.outbox import EventHub, EventSink
from publiclobby.protocol import ClientFactory
from publiclobby.reconnect import ReconnectManager
from publiclobby.translator import EventTranslator

logger = logging.getLogger(__name__)


class PublicLobbyAdapter:
    """Follows one public lobby and publishes semantic room events to its sinks.

    One adapter per match. Once a fatal error has been published the adapter is terminal and a
    new one must be created.
    """

    def __init__(
        self,
        *,
        config: AdapterConfig,
        client_factory: ClientFactory,
        sinks: list[EventSink] | None = None,
        hub: EventHub | None = None,
    ) -> None:
        self.config = config
        self.hub = hub or EventHub()
        for sink in sinks or []:
            self.hub.subscribe(sink)

        self.translator = EventTranslator(hub=self.hub, meeting_grace_seconds=config.meeting_grace_seconds)
        self.manager = ReconnectManager(
            config=config,
            client_factory=client_factory,
            translator=self.translator,
            hub=self.hub,
        )
        self._start_task: asyncio.Task[bool] | None = None
        self._torn_down = False

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    async def start(self) -> bool:
        """Join the lobby and begin translating. Returns False if the adapter failed fatally."""

        if self._torn_down:
            raise RuntimeError("Adapter has been torn down; create a new one")
        if self._start_task is not None:
            return await self._start_task

        self.translator.start()
        self._start_task = asyncio.get_running_loop().create_task(self.manager.start(), name="lobby-start")
        try:
            ok = await self._start_task
        except asyncio.CancelledError:
            if not self._torn_down:
                raise
            logger.info("Adapter start for %s interrupted by teardown", self.config.game_code)
            return False

        if not ok:
            await self.translator.stop()
        return ok

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
            try:
                await self._start_task
            except asyncio.CancelledError:
                pass

        await self.manager.teardown()
        await self.translator.stop()
