from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import fakeredis
import pytest

from fakes import FakeLobby
from publiclobby.config import AdapterConfig
from publiclobby.outbox import EventHub, MemorySink


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs (PyCharm/CLI).

    In CI we *don't* auto-load `.env` by default, so a developer's local REDIS_URL or LOBBY_*
    settings never leak into the suite unless explicitly opted in with
    PUBLICLOBBY_LOAD_DOTENV_FOR_TESTS=1.
    """

    if os.environ.get("CI") and os.environ.get("PUBLICLOBBY_LOAD_DOTENV_FOR_TESTS") != "1":
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)


@pytest.fixture()
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture()
def hub(sink: MemorySink) -> EventHub:
    h = EventHub()
    h.subscribe(sink)
    return h


@pytest.fixture()
def config() -> AdapterConfig:
    # Short grace delay keeps meeting tests fast; no retry delay.
    return AdapterConfig(game_code="ABCD", meeting_grace_seconds=0.01, join_retry_delay_seconds=0.0)


@pytest.fixture()
def lobby() -> FakeLobby:
    return FakeLobby()


@pytest.fixture()
def redis_client() -> Generator[fakeredis.FakeRedis, None, None]:
    r = fakeredis.FakeRedis(decode_responses=True)
    yield r
    r.flushall()
