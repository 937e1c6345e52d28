"""Connections to backing services (Redis)."""
