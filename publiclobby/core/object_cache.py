from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from publiclobby.protocol import Component, PlayerObject, Room

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ObjectCache:
    """Snapshot of a room's object registries, keyed by the protocol's own ids.

    Captured once from a fully spawned warm-up session and re-attached verbatim into every
    later session. Ids are never remapped, which is what keeps player identity stable across
    reconnects.
    """

    players: Mapping[int, PlayerObject] = field(default_factory=lambda: MappingProxyType({}))
    components: Mapping[int, Component] = field(default_factory=lambda: MappingProxyType({}))
    globals: tuple[Component | None, ...] = ()

    @classmethod
    def capture(cls, room: Room, *, local_client_id: int) -> "ObjectCache":
        # Ids <= 0 are the room's own global slot, not a player.
        players = {
            object_id: obj
            for object_id, obj in room.objects.items()
            if object_id != local_client_id and object_id > 0
        }
        components = {
            net_id: component
            for net_id, component in room.netobjects.items()
            if component.owner_id != local_client_id
        }
        cache = cls(
            players=MappingProxyType(players),
            components=MappingProxyType(components),
            globals=tuple(room.components),
        )
        logger.info(
            "Captured object cache: %d players, %d components, %d global slots",
            len(players),
            len(components),
            len(cache.globals),
        )
        return cache

    @property
    def is_empty(self) -> bool:
        return not self.players and not self.components and not any(c is not None for c in self.globals)

    def attach(self, room: Room) -> None:
        """Re-point every cached object at `room` and insert it under its original id."""

        for object_id, obj in self.players.items():
            _rehome(obj, room)
            room.objects[object_id] = obj

        for net_id, component in self.components.items():
            _rehome(component, room)
            room.netobjects[net_id] = component

        # Fixed slots: grow the room's list if it is shorter than the snapshot.
        while len(room.components) < len(self.globals):
            room.components.append(None)
        for idx, component in enumerate(self.globals):
            if component is None:
                continue
            _rehome(component, room)
            room.components[idx] = component

        logger.debug("Re-attached object cache into room %s", getattr(room, "code", "?"))


def _rehome(obj: Any, room: Room) -> None:
    obj.room = room
