"""Loadout: local-first state replication with undo/redo history."""

__version__ = "0.1.0"
