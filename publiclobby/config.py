from __future__ import annotations

import os

from pydantic import BaseModel, Field, field_validator

from publiclobby.models import Region

GAME_VERSION = "2020.11.17.0"
CLIENT_NAME = "auproxy"

DEFAULT_MAX_JOIN_ATTEMPTS = 5
DEFAULT_MEETING_GRACE_SECONDS = 2.5

# Secondary master server of each region; the primary is frequently saturated.
DEFAULT_MASTER_SERVERS: dict[Region, tuple[str, int]] = {
    Region.north_america: ("50.116.1.42", 22023),
    Region.europe: ("172.105.251.170", 22023),
    Region.asia: ("139.162.111.196", 22023),
}


class AdapterConfig(BaseModel):
    game_code: str = Field(..., min_length=4, max_length=6)
    region: Region = Region.north_america

    max_join_attempts: int = Field(DEFAULT_MAX_JOIN_ATTEMPTS, ge=1, le=50)
    join_retry_delay_seconds: float = Field(0.0, ge=0.0)

    # Must outlast the client's own position-snapping animation at meeting start.
    meeting_grace_seconds: float = Field(DEFAULT_MEETING_GRACE_SECONDS, ge=0.0)

    # None => wait forever, matching the protocol (which specifies no timeout).
    spawn_timeout_seconds: float | None = Field(None, gt=0.0)
    settings_timeout_seconds: float | None = Field(None, gt=0.0)

    client_name: str = CLIENT_NAME
    game_version: str = GAME_VERSION
    master_servers: dict[Region, tuple[str, int]] = Field(default_factory=lambda: dict(DEFAULT_MASTER_SERVERS))

    @field_validator("game_code", mode="before")
    @classmethod
    def _normalize_code(cls, v: object) -> str:
        code = str(v).strip().upper()
        if not code.isalpha():
            raise ValueError("game_code must be letters only")
        return code

    def master_server(self) -> tuple[str, int]:
        try:
            return self.master_servers[self.region]
        except KeyError as e:
            raise ValueError(f"No master server configured for region '{self.region.value}'") from e


def _optional_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


def config_from_env() -> AdapterConfig:
    """Build an AdapterConfig from LOBBY_* environment variables.

    Only LOBBY_GAME_CODE is required; everything else falls back to model defaults.
    """

    game_code = os.environ.get("LOBBY_GAME_CODE")
    if not game_code:
        raise RuntimeError("Set LOBBY_GAME_CODE to the room code the adapter should follow")

    values: dict[str, object] = {"game_code": game_code}
    if region := os.environ.get("LOBBY_REGION"):
        values["region"] = region.strip().lower()
    if attempts := os.environ.get("LOBBY_MAX_JOIN_ATTEMPTS"):
        values["max_join_attempts"] = int(attempts)
    if grace := os.environ.get("LOBBY_MEETING_GRACE_SECONDS"):
        values["meeting_grace_seconds"] = float(grace)
    if retry_delay := os.environ.get("LOBBY_JOIN_RETRY_DELAY"):
        values["join_retry_delay_seconds"] = float(retry_delay)
    values["spawn_timeout_seconds"] = _optional_float("LOBBY_SPAWN_TIMEOUT")
    values["settings_timeout_seconds"] = _optional_float("LOBBY_SETTINGS_TIMEOUT")

    return AdapterConfig.model_validate(values)
