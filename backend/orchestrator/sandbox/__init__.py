"""Sandbox lifecycle: runtime adapters, registry, manager and per-session client."""
