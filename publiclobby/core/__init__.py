"""Core translation primitives (object cache, spawn/settings sync, comms policy, deferred actions).

Kept free of connection management so they can be driven directly from tests.
"""
