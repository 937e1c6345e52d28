from __future__ import annotations

from dataclasses import dataclass

from publiclobby.protocol import ProtocolClient, Room


@dataclass(eq=False, slots=True)
class Session:
    """One connected, joined room. Owned by the ReconnectManager; borrowed by the translator."""

    client: ProtocolClient
    room: Room
    closed: bool = False

    @property
    def client_id(self) -> int:
        return self.client.client_id
