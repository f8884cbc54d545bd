"""Backup archive export, validation and conflict-aware import."""
