from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, cast

import redis

from publiclobby.core.events import AdapterEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def publish(self, event: AdapterEvent) -> None:  # pragma: no cover
        ...


class EventHub:
    """In-process fan-out of adapter events.

    Contract:
      - register sinks with `subscribe(sink)`.
      - `publish(event)` delivers to every sink, in registration order.

    A sink that raises is logged and dropped so one broken consumer can't stall the translator.
    """

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []

    def subscribe(self, sink: EventSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)

    def unsubscribe(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def sinks(self) -> tuple[EventSink, ...]:
        return tuple(self._sinks)

    def publish(self, event: AdapterEvent) -> None:
        logger.debug("event %s %s", event.type, event.payload)

        dead: list[EventSink] = []
        for sink in list(self._sinks):
            try:
                sink.publish(event)
            except Exception:
                logger.exception("Event sink %r failed; unsubscribing it", sink)
                dead.append(sink)

        for sink in dead:
            self.unsubscribe(sink)


class MemorySink:
    def __init__(self) -> None:
        self.events: list[AdapterEvent] = []

    def publish(self, event: AdapterEvent) -> None:
        self.events.append(event)

    def of_type(self, type: str) -> list[AdapterEvent]:
        return [e for e in self.events if e.type == type]

    def clear(self) -> None:
        self.events.clear()


@dataclass(frozen=True, slots=True)
class LobbyStream:
    game_code: str

    @property
    def key(self) -> str:
        return f"lobby:{self.game_code}:events"


class RedisStreamSink:
    """Append every event to the lobby's Redis stream."""

    def __init__(self, *, r: redis.Redis, stream: LobbyStream, maxlen: int | None = 10_000) -> None:
        self._r = r
        self.stream = stream
        self._maxlen = maxlen

    def publish(self, event: AdapterEvent) -> None:
        # redis-py stubs expect field/value unions; our fields are always strings.
        stream_id = self._r.xadd(self.stream.key, event.as_fields(), maxlen=self._maxlen, approximate=True)
        logger.debug("xadd %s -> %s", self.stream.key, cast(str, stream_id))
