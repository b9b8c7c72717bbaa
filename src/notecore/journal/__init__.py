"""Autosave journal: durable draft snapshots and crash recovery."""
