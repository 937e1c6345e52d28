from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from publiclobby.models import MapId, RoomGroup
from publiclobby.protocol import HqHudSystem, HudOverrideSystem

# Mira HQ comms needs both consoles repaired at the same time.
MIRA_REQUIRED_CONSOLES = 2


class CommsModel(Enum):
    binary_flag = "binary_flag"
    multi_console = "multi_console"


COMMS_MODEL_BY_MAP: dict[MapId, CommsModel] = {
    MapId.the_skeld: CommsModel.binary_flag,
    MapId.april_fools_the_skeld: CommsModel.binary_flag,
    MapId.polus: CommsModel.binary_flag,
    MapId.mira_hq: CommsModel.multi_console,
}


@dataclass(frozen=True, slots=True)
class GroupTransition:
    source: RoomGroup
    target: RoomGroup


MUTE = GroupTransition(source=RoomGroup.main, target=RoomGroup.muted)
UNMUTE = GroupTransition(source=RoomGroup.muted, target=RoomGroup.main)


def comms_model_for(map_id: MapId | int | None) -> CommsModel | None:
    if map_id is None:
        return None
    try:
        return COMMS_MODEL_BY_MAP.get(MapId(map_id))
    except ValueError:
        return None


def derive_comms_transition(
    map_id: MapId | int | None,
    system: object,
    *,
    required_consoles: int = MIRA_REQUIRED_CONSOLES,
) -> GroupTransition | None:
    """Map the communications system's state to a mute/unmute transition.

    Returns None when the map has no known comms model or the system isn't the variant that
    map uses (e.g. Airship, or a decoder that hasn't populated the system yet).

    On Mira HQ anything short of every required console being repaired counts as still
    sabotaged, so a half-repaired state never unmutes anyone.
    """

    model = comms_model_for(map_id)

    if model is CommsModel.binary_flag and isinstance(system, HudOverrideSystem):
        return MUTE if system.sabotaged else UNMUTE

    if model is CommsModel.multi_console and isinstance(system, HqHudSystem):
        # Deliberately not the stricter `len(completed) == 2 and all(id > 0)` check: console ids
        # are 0 and 1, so that check can never pass. Distinct ids are counted instead.
        repaired = {console for console in system.completed}
        return UNMUTE if len(repaired) >= required_consoles else MUTE

    return None
