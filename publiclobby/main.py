from __future__ import annotations

import asyncio
import importlib
import logging
import os
from typing import cast

from dotenv import load_dotenv

from publiclobby.adapter import PublicLobbyAdapter
from publiclobby.config import config_from_env
from publiclobby.infra.redis_client import create_redis
from publiclobby.outbox import LobbyStream, RedisStreamSink
from publiclobby.protocol import ClientFactory

logger = logging.getLogger(__name__)


def load_client_factory(target: str) -> ClientFactory:
    """Resolve a "package.module:callable" string to the protocol client factory."""

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise RuntimeError(f"LOBBY_CLIENT_FACTORY must look like 'module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    return cast(ClientFactory, getattr(module, attr))


async def run() -> None:
    config = config_from_env()

    factory_target = os.environ.get("LOBBY_CLIENT_FACTORY")
    if not factory_target:
        raise RuntimeError("Set LOBBY_CLIENT_FACTORY to the protocol client factory (module:callable)")

    sink = RedisStreamSink(r=create_redis(), stream=LobbyStream(game_code=config.game_code))
    adapter = PublicLobbyAdapter(config=config, client_factory=load_client_factory(factory_target), sinks=[sink])

    try:
        if not await adapter.start():
            return
        # Translation runs on the adapter's own tasks; park until interrupted or failed.
        await adapter.manager.failed.wait()
    finally:
        await adapter.teardown()


def main() -> None:
    load_dotenv(override=False)
    logging.basicConfig(level=os.environ.get("LOBBY_LOG_LEVEL", "INFO").upper())
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted; adapter torn down")


if __name__ == "__main__":
    main()
