"""kinkeeper: genealogy records with conflict-aware backup and restore."""

__version__ = "0.1.0"
