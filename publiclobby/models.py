from __future__ import annotations

from enum import IntEnum, StrEnum

# Color id reported when a player leaves the roster and should no longer be rendered.
NO_COLOR = -1

# VotingComplete.exiled value meaning nobody was voted off.
NO_EXILE = 0xFF


class RoomGroup(StrEnum):
    main = "Main"
    muted = "Muted"
    spectator = "Spectator"


class Region(StrEnum):
    north_america = "na"
    europe = "eu"
    asia = "as"


class MapId(IntEnum):
    the_skeld = 0
    mira_hq = 1
    polus = 2
    april_fools_the_skeld = 3
    airship = 4

    @property
    def display_name(self) -> str:
        return _MAP_NAMES[self]


_MAP_NAMES: dict[MapId, str] = {
    MapId.the_skeld: "TheSkeld",
    MapId.mira_hq: "MiraHQ",
    MapId.polus: "Polus",
    MapId.april_fools_the_skeld: "AprilFoolsTheSkeld",
    MapId.airship: "Airship",
}


class RejoinReason(StrEnum):
    game_ended = "game_ended"
    host_migrated = "host_migrated"
    connection_lost = "connection_lost"
