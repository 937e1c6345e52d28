from __future__ import annotations

from enum import StrEnum

from statemachine import State, StateMachine


class ConnectionState(StrEnum):
    disconnected = "disconnected"
    connecting = "connecting"
    joining = "joining"
    active = "active"
    rejoining = "rejoining"
    failed = "failed"


class ConnectionFSM(StateMachine):
    """Connection lifecycle of the adapter.

    disconnected -> connecting -> joining -> active -> rejoining -> active
    The warm-up join returns to disconnected after capturing state; `failed` is terminal.
    The manager performs the I/O; the FSM only guards transitions.
    """

    disconnected = State(ConnectionState.disconnected.value, value=ConnectionState.disconnected.value, initial=True)
    connecting = State(ConnectionState.connecting.value, value=ConnectionState.connecting.value)
    joining = State(ConnectionState.joining.value, value=ConnectionState.joining.value)
    active = State(ConnectionState.active.value, value=ConnectionState.active.value)
    rejoining = State(ConnectionState.rejoining.value, value=ConnectionState.rejoining.value)
    failed = State(ConnectionState.failed.value, value=ConnectionState.failed.value, final=True)

    begin_connect = disconnected.to(connecting)
    begin_join = connecting.to(joining)
    # Join failure inside the attempt budget: go round again.
    retry = joining.to(connecting) | connecting.to(connecting) | rejoining.to(rejoining)
    joined = joining.to(active) | rejoining.to(active)
    warmed_up = joining.to(disconnected)
    begin_rejoin = active.to(rejoining)
    drop = (
        connecting.to(disconnected)
        | joining.to(disconnected)
        | active.to(disconnected)
        | rejoining.to(disconnected)
    )
    fail = (
        disconnected.to(failed)
        | connecting.to(failed)
        | joining.to(failed)
        | rejoining.to(failed)
        | active.to(failed)
    )

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState(str(self.current_state.value))
