"""Public-lobby adapter: turns a raw game protocol session into semantic room events.

The protocol client itself is supplied by the embedding application (see `publiclobby.protocol`).
"""
