from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from publiclobby.models import RoomGroup

EventType = Literal[
    "HOST_CHANGED",
    "MAP_CHANGED",
    "PLAYER_COLOR_CHANGED",
    "PLAYER_POSE_CHANGED",
    "ALL_PLAYERS_POSE_CHANGED",
    "PLAYER_GROUP_CHANGED",
    "ALL_PLAYERS_GROUP_CHANGED",
    "SETTINGS_CHANGED",
    "ERROR",
]

Primitive = str | int | float | bool


@dataclass(frozen=True, slots=True)
class AdapterEvent:
    """A semantic room event for the downstream application.

    Payload values are primitives only so events can cross process boundaries unchanged.
    """

    type: EventType
    payload: dict[str, Primitive]
    ts: datetime

    @staticmethod
    def now(*, type: EventType, payload: dict[str, Primitive]) -> "AdapterEvent":
        return AdapterEvent(type=type, payload=payload, ts=datetime.now(timezone.utc))

    def as_fields(self) -> dict[str, str]:
        fields = {"type": self.type, "ts": self.ts.isoformat()}
        for k, v in self.payload.items():
            fields[k] = str(v).lower() if isinstance(v, bool) else str(v)
        return fields


def host_changed(name: str) -> AdapterEvent:
    return AdapterEvent.now(type="HOST_CHANGED", payload={"name": name})


def map_changed(map_name: str) -> AdapterEvent:
    return AdapterEvent.now(type="MAP_CHANGED", payload={"map": map_name})


def player_color_changed(name: str, color: int) -> AdapterEvent:
    return AdapterEvent.now(type="PLAYER_COLOR_CHANGED", payload={"name": name, "color": color})


def player_pose_changed(name: str, x: float, y: float) -> AdapterEvent:
    return AdapterEvent.now(type="PLAYER_POSE_CHANGED", payload={"name": name, "x": x, "y": y})


def all_players_pose_changed(x: float, y: float) -> AdapterEvent:
    return AdapterEvent.now(type="ALL_PLAYERS_POSE_CHANGED", payload={"x": x, "y": y})


def player_group_changed(name: str, group: RoomGroup) -> AdapterEvent:
    return AdapterEvent.now(type="PLAYER_GROUP_CHANGED", payload={"name": name, "group": group.value})


def all_players_group_changed(group: RoomGroup) -> AdapterEvent:
    return AdapterEvent.now(type="ALL_PLAYERS_GROUP_CHANGED", payload={"group": group.value})


def settings_changed(*, crewmate_vision: float) -> AdapterEvent:
    return AdapterEvent.now(type="SETTINGS_CHANGED", payload={"crewmate_vision": crewmate_vision})


def error(message: str, *, fatal: bool) -> AdapterEvent:
    return AdapterEvent.now(type="ERROR", payload={"message": message, "fatal": fatal})
