from __future__ import annotations

import logging
import os
from urllib.parse import urlsplit

import redis

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def redis_url_from_env() -> str:
    return os.environ.get("REDIS_URL") or DEFAULT_REDIS_URL


def create_redis(url: str | None = None) -> redis.Redis:
    """Client for the lobby event streams.

    decode_responses=True so stream fields read back as str, matching what the sink writes.
    """

    url = url or redis_url_from_env()
    parts = urlsplit(url)
    logger.info("Lobby events go to redis at %s%s", parts.hostname or "localhost", parts.path or "")
    return redis.Redis.from_url(url, decode_responses=True)
